import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .exceptions import ResourceError
from .models import CAPACITOR, FLUTTER, REACT_NATIVE

logger = logging.getLogger(__name__)

SIGNING_PROGRESS = 90

# Staged sources are written without the executable bit, so the wrapper is run through sh.
GRADLE_RELEASE = ("sh", "gradlew", "assembleRelease", "--no-daemon")
GRADLE_UNSIGNED_APK = "android/app/build/outputs/apk/release/app-release-unsigned.apk"


@dataclass(frozen=True)
class Step:
    label: str
    command: tuple
    progress: int
    cwd: str = "."
    timeout: Optional[int] = None


@dataclass(frozen=True)
class Pipeline:
    framework: str
    steps: tuple
    artifact: str

    def artifact_path(self, source_dir):
        return Path(source_dir) / self.artifact


PIPELINES = {
    REACT_NATIVE: Pipeline(
        framework=REACT_NATIVE,
        steps=(
            Step("Installing dependencies", ("npm", "install"), 10),
            Step(
                "Bundling JavaScript",
                (
                    "npx", "react-native", "bundle",
                    "--platform", "android",
                    "--dev", "false",
                    "--entry-file", "index.js",
                    "--bundle-output", "android/app/src/main/assets/index.android.bundle",
                    "--assets-dest", "android/app/src/main/res",
                ),
                30,
            ),
            Step("Compiling Android release", GRADLE_RELEASE, 50, cwd="android"),
        ),
        artifact=GRADLE_UNSIGNED_APK,
    ),
    FLUTTER: Pipeline(
        framework=FLUTTER,
        steps=(
            Step("Getting Flutter dependencies", ("flutter", "pub", "get"), 10),
            Step("Building Flutter Android app", ("flutter", "build", "apk", "--release"), 40),
        ),
        artifact="build/app/outputs/flutter-apk/app-release.apk",
    ),
    CAPACITOR: Pipeline(
        framework=CAPACITOR,
        steps=(
            Step("Installing dependencies", ("npm", "install"), 10),
            Step("Building web assets", ("npm", "run", "build"), 30),
            Step("Syncing with Capacitor", ("npx", "cap", "sync", "android"), 50),
            Step("Building Android app", GRADLE_RELEASE, 70, cwd="android"),
        ),
        artifact=GRADLE_UNSIGNED_APK,
    ),
}


def get_pipeline(framework):
    return PIPELINES.get(framework)


def run_pipeline(pipeline, source_dir, runner, log, token=None, env=None, timeout=None):
    """Run the framework steps in order, stopping at the first failure.

    Returns the path of the unsigned APK.
    """
    source_dir = Path(source_dir)
    for step in pipeline.steps:
        if token is not None:
            token.raise_if_cancelled()
        log.progress(step.progress, f"{step.label}...")
        runner.run(
            source_dir / step.cwd,
            step.command,
            timeout=step.timeout or timeout,
            env=env,
            log=log,
            token=token,
        )

    artifact = pipeline.artifact_path(source_dir)
    if not artifact.is_file():
        raise ResourceError(f"Build finished but {pipeline.artifact} was not produced")
    log.info(f"Unsigned APK produced: {pipeline.artifact}")
    return artifact


def build_and_sign(pipeline, source_dir, runner, signer, log, project_id, output_path, token=None, env=None, timeout=None):
    """Compile with ``pipeline`` and hand the unsigned APK to the signing pipeline."""
    unsigned = run_pipeline(pipeline, source_dir, runner, log, token=token, env=env, timeout=timeout)
    if token is not None:
        token.raise_if_cancelled()
    log.progress(SIGNING_PROGRESS, "Signing APK...")
    return signer.run(project_id, unsigned, output_path=output_path, log=log, token=token)
