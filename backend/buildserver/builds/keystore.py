import logging
import os
import re
import secrets
import string
import threading
from pathlib import Path

from .exceptions import CommandError, KeystoreError
from .models import DistinguishedName, KeystoreConfig, utcnow
from .storage import read_json, remove_file, save_json

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_DAYS = 10000
KEY_SIZE = 2048
PASSWORD_LENGTH = 16
PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length=PASSWORD_LENGTH):
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def project_key(project_id):
    key = re.sub(r"[^A-Za-z0-9_-]", "_", str(project_id))
    if not key:
        raise KeystoreError("Project id is required for a keystore")
    return key


class FileKeystoreRepository:
    """Stores ``<project>.json`` next to ``<project>.keystore`` under one directory."""

    def __init__(self, keystore_dir):
        self.keystore_dir = Path(keystore_dir)

    def keystore_path(self, project_id):
        return self.keystore_dir / f"{project_key(project_id)}.keystore"

    def config_path(self, project_id):
        return self.keystore_dir / f"{project_key(project_id)}.json"

    def load(self, project_id):
        try:
            data = read_json(self.config_path(project_id))
        except ValueError as e:
            logger.warning(f"Unreadable keystore config for {project_id}: {e}")
            return None
        if not data:
            return None
        try:
            return KeystoreConfig.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid keystore config for {project_id}: {e}")
            return None

    def save(self, config):
        try:
            save_json(self.config_path(config.project_id), config.to_dict())
        except OSError as e:
            raise KeystoreError(f"Cannot persist keystore config for {config.project_id}: {e}") from e


class KeystoreManager:
    """Create-once, read-many signing identity per project."""

    def __init__(self, runner, repository, validity=DEFAULT_VALIDITY_DAYS, distinguished_name=None, timeout=120):
        self.runner = runner
        self.repository = repository
        self.validity = validity
        self.distinguished_name = distinguished_name or DistinguishedName()
        self.timeout = timeout
        self._locks = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, project_id):
        with self._locks_guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.Lock()
            return lock

    def load(self, project_id):
        """Return the persisted identity if its key material is still on disk."""
        config = self.repository.load(project_id)
        if config is not None and os.path.isfile(config.keystore_path):
            return config
        return None

    def get_or_create(self, project_id, log=None):
        config = self.load(project_id)
        if config is not None:
            return config
        with self._lock_for(project_id):
            # Another build may have created it while we waited for the lock.
            config = self.load(project_id)
            if config is not None:
                return config
            return self._generate(project_id, log)

    def _generate(self, project_id, log):
        keystore_path = self.repository.keystore_path(project_id)
        config = KeystoreConfig(
            project_id=project_id,
            keystore_path=str(keystore_path),
            keystore_password=generate_password(),
            key_alias=f"{project_key(project_id)}-key",
            key_password=generate_password(),
            validity=self.validity,
            distinguished_name=self.distinguished_name,
            created_at=utcnow().isoformat(),
        )
        try:
            keystore_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise KeystoreError(f"Cannot create keystore directory: {e}") from e
        # keytool writes to a scratch file; the key only appears under its final
        # name after the matching config has been saved.
        scratch_path = keystore_path.with_name(f".{keystore_path.name}.{secrets.token_hex(4)}.tmp")

        if log is not None:
            log.info(f"Generating signing keystore for project {project_id}")
        command = [
            "keytool", "-genkeypair", "-v",
            "-keystore", str(scratch_path),
            "-alias", config.key_alias,
            "-keyalg", "RSA",
            "-keysize", str(KEY_SIZE),
            "-validity", str(config.validity),
            "-storepass", config.keystore_password,
            "-keypass", config.key_password,
            "-dname", str(config.distinguished_name),
        ]
        try:
            self.runner.run(
                keystore_path.parent,
                command,
                timeout=self.timeout,
                log=log,
                redact=(config.keystore_password, config.key_password),
            )
        except CommandError as e:
            remove_file(scratch_path)
            raise KeystoreError(f"Failed to generate keystore: {e}") from e

        if not scratch_path.is_file():
            raise KeystoreError(f"keytool did not produce {scratch_path}")
        try:
            remove_file(keystore_path)
            self.repository.save(config)
            os.replace(scratch_path, keystore_path)
        except (KeystoreError, OSError) as e:
            remove_file(scratch_path)
            raise KeystoreError(f"Cannot install keystore {keystore_path}: {e}") from e
        logger.info(f"Keystore generated successfully: {keystore_path}")
        return config
