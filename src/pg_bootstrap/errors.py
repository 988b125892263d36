from __future__ import annotations

__all__ = [
    "BinariesNotFound",
    "BootstrapError",
    "CommandFailed",
    "ConfigurationError",
    "IdentityConvergenceFailed",
    "InitializationFailed",
    "ReadinessTimeout",
    "ServerStartFailed",
    "ServerStopFailed",
]


class BootstrapError(Exception):
    """Fatal failure of one bootstrap step.

    ``diagnostics`` holds free-form context (log tail, directory listing)
    printed alongside the message before the process exits.
    """

    exit_code = 1

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class ConfigurationError(BootstrapError):
    pass


class BinariesNotFound(BootstrapError):
    pass


class InitializationFailed(BootstrapError):
    pass


class ServerStartFailed(BootstrapError):
    pass


class ServerStopFailed(BootstrapError):
    pass


class ReadinessTimeout(BootstrapError):
    pass


class IdentityConvergenceFailed(BootstrapError):
    pass


class CommandFailed(RuntimeError):
    """Raised by ``run_command`` when a toolchain command exits non-zero."""

    def __init__(self, command: list[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command {' '.join(command)!r} failed with exit code {returncode}:\n"
            f"stdout: {stdout}\n"
            f"stderr: {stderr}"
        )
