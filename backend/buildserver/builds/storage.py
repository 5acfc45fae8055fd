import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path, PurePosixPath

from .exceptions import ResourceError, ValidationError

logger = logging.getLogger(__name__)


def slugify(name):
    slug = re.sub(r"\s+", "-", str(name).strip())
    slug = re.sub(r"[^A-Za-z0-9._-]", "", slug)
    return slug or "app"


def save_json(path, data):
    """Write JSON atomically: temp file in the same directory, then os.replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        remove_file(tmp_path)
        raise


def read_json(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def remove_file(path):
    """Best-effort unlink; returns True when a file was removed."""
    if not path:
        return False
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
        return False


class Workspace:
    """On-disk layout for staged sources and finished artifacts."""

    def __init__(self, builds_dir, apks_dir):
        self.builds_dir = Path(builds_dir)
        self.apks_dir = Path(apks_dir)

    def ensure_dirs(self):
        try:
            self.builds_dir.mkdir(parents=True, exist_ok=True)
            self.apks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Cannot create build directories: {e}") from e

    def get_build_path(self, build_id):
        return self.builds_dir / str(build_id)

    def ensure_build_dir(self, build_id):
        path = self.get_build_path(build_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Cannot create build directory {path}: {e}") from e
        return path

    def get_artifact_path(self, project_name, build_id):
        return self.apks_dir / f"{slugify(project_name)}-{build_id}.apk"

    def stage_files(self, build_id, files):
        """Write the submitted (path, content) entries under the build's staging directory."""
        root = self.ensure_build_dir(build_id)
        for relative, content in files:
            target = root / safe_relative_path(relative)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, "w", encoding="utf-8") as f:
                    f.write(content)
            except OSError as e:
                raise ResourceError(f"Cannot write {relative}: {e}") from e
        return root

    def remove_build(self, build_id, artifact_path=None):
        shutil.rmtree(self.get_build_path(build_id), ignore_errors=True)
        remove_file(artifact_path)


def safe_relative_path(relative):
    """Reject absolute paths and parent traversal in submitted file paths."""
    raw = str(relative).replace("\\", "/").strip()
    path = PurePosixPath(raw)
    if not raw or path.is_absolute() or ".." in path.parts or raw.startswith("~"):
        raise ValidationError(f"Invalid file path: {relative!r}")
    parts = [p for p in path.parts if p not in ("", ".")]
    if not parts:
        raise ValidationError(f"Invalid file path: {relative!r}")
    return Path(*parts)
