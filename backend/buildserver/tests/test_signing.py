import shutil

import pytest

from builds.exceptions import SigningError
from builds.signing import SigningPipeline, intermediate_paths


@pytest.fixture
def unsigned(tmp_path):
    path = tmp_path / "work" / "app-release-unsigned.apk"
    path.parent.mkdir()
    path.write_bytes(b"APK\n")
    return path


@pytest.fixture
def signer(toolchain, keystore_manager):
    return SigningPipeline(toolchain, keystore_manager)


def test_align_sign_verify(signer, toolchain, unsigned, tmp_path, recording_log):
    output = tmp_path / "apks" / "demo.apk"
    result = signer.run("proj-1", unsigned, output_path=output, log=recording_log)

    assert result == output
    assert output.read_bytes().startswith(b"SIGNED:proj-1-key:")
    programs = [c.split()[0] + " " + c.split()[1] for c in toolchain.commands()]
    assert programs == [
        "keytool -genkeypair",
        "zipalign -v",
        "apksigner sign",
        "apksigner verify",
        "zipalign -c",
    ]
    aligned, signed = intermediate_paths(unsigned)
    assert not unsigned.exists()
    assert not aligned.exists()
    assert not signed.exists()


def test_keystore_passwords_are_redacted(signer, keystore_manager, unsigned, recording_log):
    signer.run("proj-1", unsigned, log=recording_log)
    config = keystore_manager.load("proj-1")
    logged = "\n".join(recording_log.messages())
    assert "pass:****" in logged
    assert config.keystore_password not in logged


def test_verification_failure_cleans_intermediates(signer, toolchain, unsigned):
    toolchain.fail_on("apksigner verify", stderr="DOES NOT VERIFY")
    with pytest.raises(SigningError, match="Failed to verify APK"):
        signer.run("proj-1", unsigned)

    aligned, signed = intermediate_paths(unsigned)
    assert not aligned.exists()
    assert not signed.exists()
    assert unsigned.exists()


def test_alignment_failure_stops_before_signing(signer, toolchain, unsigned):
    toolchain.fail_on("zipalign -v")
    with pytest.raises(SigningError, match="Failed to align APK"):
        signer.run("proj-1", unsigned)
    assert not any(c.startswith("apksigner") for c in toolchain.commands())


class SkipAlignment(SigningPipeline):
    def align(self, unsigned_path, aligned_path, log=None, token=None):
        shutil.copyfile(unsigned_path, aligned_path)


def test_signing_an_unaligned_apk_fails_verification(toolchain, keystore_manager, unsigned):
    with pytest.raises(SigningError, match="verify"):
        SkipAlignment(toolchain, keystore_manager).run("proj-1", unsigned)


def test_missing_input(signer, tmp_path):
    with pytest.raises(SigningError):
        signer.run("proj-1", tmp_path / "nope.apk")
