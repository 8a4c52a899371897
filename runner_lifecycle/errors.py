"""
Errors Module

Exception hierarchy for runner lifecycle management.
"""

from typing import List, Optional


class RunnerLifecycleError(Exception):
    """Base exception for runner lifecycle errors"""
    pass


class ConfigError(RunnerLifecycleError):
    """Invalid manager settings or runner definitions"""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration:\n" + "\n".join(f"  - {p}" for p in self.problems))


class CredentialError(RunnerLifecycleError):
    """
    Token file could not be turned into a usable token

    ``kind`` is one of MALFORMED, REMOTE_REJECTED or UNSUPPORTED.
    ``status`` holds the HTTP status for remote rejections, or None when
    the request never got a response (timeout, DNS, refused connection).
    """

    MALFORMED = 'malformed'
    REMOTE_REJECTED = 'remote_rejected'
    UNSUPPORTED = 'unsupported'

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        self.kind = kind
        self.status = status
        super().__init__(message)

    @classmethod
    def malformed(cls, message: str) -> 'CredentialError':
        return cls(cls.MALFORMED, message)

    @classmethod
    def remote_rejected(cls, message: str, status: Optional[int] = None) -> 'CredentialError':
        return cls(cls.REMOTE_REJECTED, message, status=status)

    @property
    def is_not_found(self) -> bool:
        """404 from the mint endpoint usually means the URL does not match the token scope"""
        return self.kind == self.REMOTE_REJECTED and self.status == 404


class ConfigureError(RunnerLifecycleError):
    """The agent's configure step exited non-zero or timed out"""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ''):
        self.returncode = returncode
        self.output = output
        if output:
            message = f"{message}\n{output}"
        super().__init__(message)


class DuplicateNameError(RunnerLifecycleError):
    """Two runner definitions share a name"""

    def __init__(self, names: List[str]):
        self.names = sorted(names)
        super().__init__(f"Duplicate runner name(s): {', '.join(self.names)}")


class WorkspaceError(RunnerLifecycleError):
    """Work, state or log directory could not be prepared"""
    pass


class ProcessError(RunnerLifecycleError):
    """The agent process could not be launched or exited unexpectedly"""

    def __init__(self, message: str, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(message)
