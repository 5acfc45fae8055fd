import logging
import shutil
from pathlib import Path

from .exceptions import CommandError, SigningError
from .storage import remove_file

logger = logging.getLogger(__name__)

ALIGNMENT = "4"


def intermediate_paths(unsigned_path):
    unsigned_path = Path(unsigned_path)
    stem = unsigned_path.with_suffix("")
    return Path(f"{stem}-aligned.apk"), Path(f"{stem}-signed.apk")


class SigningPipeline:
    """align -> sign -> verify.

    Alignment has to happen before signing: re-aligning a signed APK breaks its
    signature, and verification also re-checks alignment of the signed output.
    """

    def __init__(self, runner, keystores, timeout=600):
        self.runner = runner
        self.keystores = keystores
        self.timeout = timeout

    def align(self, unsigned_path, aligned_path, log=None, token=None):
        remove_file(aligned_path)
        self.runner.run(
            Path(unsigned_path).parent,
            ["zipalign", "-v", "-p", ALIGNMENT, str(unsigned_path), str(aligned_path)],
            timeout=self.timeout,
            log=log,
            token=token,
        )

    def sign(self, aligned_path, signed_path, keystore, log=None, token=None):
        self.runner.run(
            Path(aligned_path).parent,
            [
                "apksigner", "sign",
                "--ks", keystore.keystore_path,
                "--ks-pass", f"pass:{keystore.keystore_password}",
                "--key-pass", f"pass:{keystore.key_password}",
                "--ks-key-alias", keystore.key_alias,
                "--out", str(signed_path),
                str(aligned_path),
            ],
            timeout=self.timeout,
            log=log,
            token=token,
            redact=(keystore.keystore_password, keystore.key_password),
        )

    def verify(self, signed_path, log=None, token=None):
        cwd = Path(signed_path).parent
        self.runner.run(cwd, ["apksigner", "verify", "--verbose", str(signed_path)], timeout=self.timeout, log=log, token=token)
        self.runner.run(cwd, ["zipalign", "-c", "-p", ALIGNMENT, str(signed_path)], timeout=self.timeout, log=log, token=token)

    def run(self, project_id, unsigned_path, output_path=None, log=None, token=None):
        """Sign ``unsigned_path`` with the project's keystore and return the signed APK path."""
        unsigned_path = Path(unsigned_path)
        aligned_path, signed_path = intermediate_paths(unsigned_path)
        if not unsigned_path.is_file():
            raise SigningError(f"Unsigned artifact not found: {unsigned_path}")

        keystore = self.keystores.get_or_create(project_id, log=log)
        step = "align"
        try:
            if log is not None:
                log.info("Aligning APK...")
            self.align(unsigned_path, aligned_path, log=log, token=token)
            step = "sign"
            if log is not None:
                log.info(f"Signing APK with key alias {keystore.key_alias}...")
            self.sign(aligned_path, signed_path, keystore, log=log, token=token)
            step = "verify"
            if log is not None:
                log.info("Verifying APK signature...")
            self.verify(signed_path, log=log, token=token)
        except CommandError as e:
            remove_file(aligned_path)
            remove_file(signed_path)
            raise SigningError(f"Failed to {step} APK: {e}") from e
        except BaseException:
            remove_file(aligned_path)
            remove_file(signed_path)
            raise

        final_path = signed_path
        if output_path is not None:
            final_path = Path(output_path)
            try:
                final_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(signed_path), str(final_path))
            except OSError as e:
                remove_file(aligned_path)
                remove_file(signed_path)
                raise SigningError(f"Cannot move signed APK to {final_path}: {e}") from e

        remove_file(unsigned_path)
        remove_file(aligned_path)
        logger.info(f"APK signed and verified successfully: {final_path}")
        return final_path
