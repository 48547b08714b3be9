"""Markers for annotated model modules.

The generator reads these declarations statically; at runtime they only keep
the annotated classes importable::

    from datetime import datetime
    from typing import List, Optional

    from mb_core.annotations import entity, prop, relation

    @entity(uid=8430112365749232921)
    class Task:
        id: int = 0
        text: str = prop(index=True)
        owner: int = prop(link="User")
        due: Optional[datetime] = None
        watchers: List["User"] = relation("User")
"""

from typing import Any, Dict, List, Optional, TypeVar, Union

T = TypeVar("T")

PROP_OPTIONS = ("id", "uid", "index", "unique", "type", "link", "transient", "default")
RELATION_OPTIONS = ("target", "uid")
ENTITY_OPTIONS = ("uid",)


def entity(cls: Optional[T] = None, *, uid: Union[int, str, None] = None) -> Any:
    def decorate(target: T) -> T:
        setattr(target, "__mb_entity__", {"uid": uid})
        return target

    if cls is not None:
        return decorate(cls)
    return decorate


def prop(
    default: Any = None,
    *,
    id: bool = False,
    uid: Union[int, str, None] = None,
    index: Union[bool, str] = False,
    unique: bool = False,
    type: Optional[str] = None,
    link: Optional[str] = None,
    transient: bool = False,
) -> Any:
    return default


def relation(target: Optional[str] = None, *, uid: Union[int, str, None] = None) -> List[Any]:
    return []


def entity_options(cls: Any) -> Dict[str, Any]:
    return dict(getattr(cls, "__mb_entity__", {}))
