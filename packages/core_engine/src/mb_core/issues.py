from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence


@dataclass(frozen=True)
class Issue:
    severity: str
    code: str
    message: str
    path: str = "/"

    def line(self) -> str:
        return f"[{self.severity.upper()}] {self.code} {self.path}: {self.message}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "severity": self.severity,
            "code": self.code,
            "message": self.message,
            "path": self.path,
        }


def error(code: str, message: str, path: str = "/") -> Issue:
    return Issue(severity="error", code=code, message=message, path=path)


def has_errors(issues: Iterable[Issue]) -> bool:
    return any(issue.severity == "error" for issue in issues)


def to_lines(issues: List[Issue]) -> List[str]:
    return [issue.line() for issue in issues]


def json_path(parts: Sequence[Any]) -> str:
    if not parts:
        return "/"
    return "/" + "/".join(str(part) for part in parts)
