"""Exception hierarchy shared by the dump and restore pipelines."""

from __future__ import annotations


class BackupError(Exception):
    """Base class for every error raised by dbarchive."""


class ConfigError(BackupError):
    """Invalid or incomplete configuration (missing field, bad mapping, unknown engine)."""


class ConnectivityError(BackupError):
    """The database server could not be reached or rejected the credentials."""


class ProcessError(BackupError):
    """An external tool exited unsuccessfully."""

    def __init__(self, tool: str, returncode: int | None, stderr: str = "", message: str | None = None):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            message = f"{tool} exited with code {returncode}"
            if stderr:
                message += f": {stderr}"
        super().__init__(message)


class ProcessCancelled(ProcessError):
    """The running tool was killed because the job was cancelled."""

    def __init__(self, tool: str):
        super().__init__(tool, None, message=f"{tool} was cancelled")


class FormatError(BackupError):
    """The input file is not in a shape the restore path can handle."""


class ArchiveFormatError(FormatError):
    """A multi-database archive is missing its manifest or is corrupt."""


class IntegrityError(BackupError):
    """The produced artifact failed verification (e.g. zero bytes)."""
