class VncProtectionError(Exception):
    pass


class ValidationError(VncProtectionError, ValueError):
    pass


class PersistenceError(VncProtectionError):
    pass


class FilterCommandError(VncProtectionError):
    def __init__(self, message, command=None, returncode=None, stderr=""):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class SourceUnavailableError(VncProtectionError):
    pass


class ConfigError(VncProtectionError):
    pass
