from typing import Iterable, List, Optional, Sequence


class ModelBindError(Exception):
    """Base class for every failure the generator reports to its caller."""


class SchemaDeclarationError(ModelBindError):
    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        line: Optional[int] = None,
        declaration: Optional[str] = None,
    ) -> None:
        self.message = message
        self.path = path
        self.line = line
        self.declaration = declaration
        super().__init__(self._format())

    def _format(self) -> str:
        location = ""
        if self.path:
            location = self.path
            if self.line:
                location += f":{self.line}"
            location += ": "
        subject = f"{self.declaration}: " if self.declaration else ""
        return f"{location}{subject}{self.message}"


class CorruptDescriptorError(ModelBindError):
    def __init__(self, message: str, path: Optional[str] = None, issues: Sequence = ()) -> None:
        self.path = path
        self.issues = list(issues)
        lines: List[str] = [f"{path}: {message}" if path else message]
        for issue in self.issues:
            lines.append("  " + issue.line())
        super().__init__("\n".join(lines))


class ReconciliationError(ModelBindError):
    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        property: Optional[str] = None,
        uids: Iterable[int] = (),
    ) -> None:
        self.entity = entity
        self.property = property
        self.uids = sorted(set(uids))
        subject = entity or ""
        if property:
            subject += f".{property}"
        text = f"{subject}: {message}" if subject else message
        if self.uids:
            text += " (uid " + ", ".join(str(uid) for uid in self.uids) + ")"
        super().__init__(text)


class GeneratorInternalError(ModelBindError):
    """An invariant was violated between reconciliation and emission."""
