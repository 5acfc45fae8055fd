class BuildServerError(Exception):
    """Base class for every error raised by the build server."""


# ---- Validation errors (rejected before a record exists) ----
class ValidationError(BuildServerError):
    pass


# ---- Admission errors (no side effects) ----
class BuildNotFound(BuildServerError):
    def __init__(self, build_id):
        super().__init__(f"Build {build_id} not found")
        self.build_id = build_id


class InvalidStateError(BuildServerError):
    pass


class ArtifactNotReady(BuildServerError):
    pass


# ---- Execution errors ----
class CommandError(BuildServerError):
    """An external command exited non-zero or timed out.

    Carries the (already truncated) captured output of both streams.
    """

    def __init__(self, message, command=None, returncode=None, stdout="", stderr=""):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self):
        return "\n".join(stream for stream in (self.stderr, self.stdout) if stream)


class CommandFailed(CommandError):
    pass


class CommandTimeout(CommandError):
    pass


class BuildCancelled(BuildServerError):
    def __init__(self, message="Build cancelled by user"):
        super().__init__(message)


# ---- Signing errors ----
class SigningError(BuildServerError):
    pass


# ---- Resource errors ----
class ResourceError(BuildServerError):
    pass


class KeystoreError(ResourceError):
    pass
