"""
Declarative markers.

A marker is an instance of a ``Marker`` subclass attached to a program element.
Functions, properties, static/class methods and classes take markers through
decorator syntax; fields take them through ``typing.Annotated`` metadata:

    class Settings:
        volume: Annotated[float, Config("Volume"), UIFloatSlider(0, 1)] = 0.5

        @Config("Reload")
        @staticmethod
        def reload() -> None: ...

The marker kind is the marker's class.
"""

import types
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Final, Optional, Tuple, Type, TypeVar, Union, get_args, get_origin

from markerconf.errors import ArgumentError

MARKERS_ATTR = '__markers__'

M = TypeVar('M', bound='Marker')


class Marker:
    """Base class for all markers. Instances double as decorators."""

    def __call__(self, target):
        attach_marker(target, self)
        return target

    def __repr__(self) -> str:
        fields = ', '.join(f"{k}={v!r}" for k, v in vars(self).items() if not k.startswith('_'))
        return f"{type(self).__name__}({fields})"


def _marker_host(target: Any) -> Any:
    """Object whose ``__dict__`` stores the markers of ``target``."""
    if isinstance(target, property):
        if target.fget is None:
            raise ArgumentError("Cannot attach a marker to a property without a getter")
        return target.fget
    if isinstance(target, (staticmethod, classmethod)):
        return target.__func__
    return target


def attach_marker(target: Any, marker: 'Marker') -> None:
    """Attach ``marker`` to ``target``.

    Decorators apply bottom-up, so markers are inserted at the front to keep
    the order they appear in the source.
    """
    host = _marker_host(target)
    try:
        own = vars(host)
    except TypeError as exc:
        raise ArgumentError(f"Cannot attach markers to {type(target).__name__} objects") from exc
    # functools.wraps copies __dict__, so never mutate an inherited list in place
    markers = list(own.get(MARKERS_ATTR, ()))
    markers.insert(0, marker)
    setattr(host, MARKERS_ATTR, tuple(markers))


def markers_of(target: Any) -> Tuple['Marker', ...]:
    """Markers attached directly to ``target`` (not inherited)."""
    host = _marker_host(target)
    try:
        own = vars(host)
    except TypeError:
        return ()
    return tuple(m for m in own.get(MARKERS_ATTR, ()) if isinstance(m, Marker))


def filter_markers(markers: Tuple['Marker', ...], kind: Optional[Type[M]] = None) -> Tuple[M, ...]:
    if kind is None:
        return markers
    return tuple(m for m in markers if isinstance(m, kind))


# =============================================================================
# ANNOTATION UNWRAPPING
# =============================================================================

@dataclass(frozen=True)
class FieldAnnotation:
    """Result of unwrapping a field annotation."""
    value_type: Any
    markers: Tuple['Marker', ...] = ()
    is_classvar: bool = False
    is_final: bool = False


def unwrap_annotation(annotation: Any) -> FieldAnnotation:
    """Split ``ClassVar``/``Final``/``Annotated`` wrappers off an annotation.

    Wrappers may nest in either order, e.g. ``ClassVar[Annotated[int, m]]`` or
    ``Annotated[Final[int], m]``.
    """
    markers = []
    is_classvar = False
    is_final = False
    current = annotation
    while True:
        origin = get_origin(current)
        if origin is Annotated:
            args = get_args(current)
            markers.extend(m for m in current.__metadata__ if isinstance(m, Marker))
            current = args[0]
        elif origin is ClassVar or current is ClassVar:
            is_classvar = True
            args = get_args(current)
            current = args[0] if args else Any
        elif origin is Final or current is Final:
            is_final = True
            args = get_args(current)
            current = args[0] if args else Any
        else:
            break
    return FieldAnnotation(
        value_type=current,
        markers=tuple(markers),
        is_classvar=is_classvar,
        is_final=is_final,
    )


def runtime_class(annotation: Any) -> Any:
    """Best-effort class for an annotation (``Optional[int]`` -> ``int``)."""
    origin = get_origin(annotation)
    if origin is None and isinstance(annotation, type):
        return annotation
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return runtime_class(args[0])
        return object
    if isinstance(origin, type):
        return origin
    return object
