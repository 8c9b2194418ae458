from dataclasses import dataclass
from typing import List, Optional


class CanLensError(Exception):
    """Base class for errors raised by canlens."""


class ConfigError(CanLensError):
    pass


class TraceFormatError(CanLensError):
    """A trace file is unsupported, malformed or holds no frames."""


@dataclass
class DatabaseIssue:
    line: int
    message: str

    def __str__(self) -> str:
        if self.line > 0:
            return f"line {self.line}: {self.message}"
        return self.message


class DatabaseError(CanLensError):
    def __init__(self, message: str, issues: Optional[List[DatabaseIssue]] = None):
        super().__init__(message)
        self.issues = issues or []
