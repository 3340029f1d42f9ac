"""
Runtime-reified generic classes.

Python erases type parameters, but a typed configuration entry needs to know
its value type after construction (for storage coercion, UI dispatch and
validity checks). Classes decorated with ``@reified`` produce a real, cached
subclass per parameterization:

    @reified(arity=1)
    class Box:
        ...

    Box[int] is Box[int]            # True (cached)
    Box[int] is not Box[str]        # True
    type(Box[int]()).__args__       # (int,)
    isinstance(Box[int](), Box[str])  # False

Instantiation of the unparameterized class is allowed; callers that require a
parameterization check ``get_reified_args()``.
"""

import threading
from typing import Any, Dict, Tuple

# =============================================================================
# TYPE CACHE
# =============================================================================

_reified_cache: Dict[Tuple[type, tuple], type] = {}
_reified_lock = threading.Lock()


# =============================================================================
# REIFIED METACLASS
# =============================================================================

class ReifiedMeta(type):
    """
    Metaclass of parameterized subclasses.

    Two parameterizations are the same type when origin and arguments match;
    isinstance() on a parameterized type requires the exact parameterization
    (plain ``Box()`` instances are not ``Box[int]``).
    """

    def __instancecheck__(cls, instance: Any) -> bool:
        inst_type = type(instance)
        if inst_type is cls:
            return True
        if is_reified(inst_type) and inst_type.__origin__ is cls.__origin__:
            return inst_type.__args__ == cls.__args__
        return False

    def __subclasscheck__(cls, subclass: type) -> bool:
        """Covariant on every argument that is a class."""
        if not is_reified(subclass):
            return False
        if not issubclass(subclass.__origin__, cls.__origin__):
            return False
        if len(subclass.__args__) != len(cls.__args__):
            return False
        for sub_arg, cls_arg in zip(subclass.__args__, cls.__args__):
            if isinstance(sub_arg, type) and isinstance(cls_arg, type):
                if not issubclass(sub_arg, cls_arg):
                    return False
            elif sub_arg != cls_arg:
                return False
        return True

    def __hash__(cls) -> int:
        return hash((cls.__origin__, cls.__args__))

    def __eq__(cls, other: Any) -> bool:
        if not is_reified(other):
            return False
        return cls.__origin__ is other.__origin__ and cls.__args__ == other.__args__

    def __repr__(cls) -> str:
        return cls.__name__


def _arg_name(arg: Any) -> str:
    return arg.__name__ if hasattr(arg, '__name__') else repr(arg)


def make_reified_type(origin: type, args: tuple) -> type:
    """Get or create the cached parameterization ``origin[args]``."""
    key = (origin, args)
    cached = _reified_cache.get(key)
    if cached is not None:
        return cached

    arity = getattr(origin, '__reified_arity__', None)
    if arity is not None and len(args) != arity:
        raise TypeError(
            f"{origin.__name__} takes {arity} type argument(s), got {len(args)}"
        )

    with _reified_lock:
        cached = _reified_cache.get(key)
        if cached is not None:
            return cached
        type_name = f"{origin.__name__}[{', '.join(_arg_name(a) for a in args)}]"
        reified_type = ReifiedMeta(
            type_name,
            (origin,),
            {
                '__origin__': origin,
                '__args__': args,
                '__module__': origin.__module__,
                '__qualname__': f"{origin.__qualname__}[{', '.join(_arg_name(a) for a in args)}]",
            }
        )
        _reified_cache[key] = reified_type
        return reified_type


# =============================================================================
# DECORATOR
# =============================================================================

def reified(arity: int = 1):
    """
    Make a class support cached runtime parameterization via ``cls[...]``.

    Args:
        arity: Number of type arguments every parameterization must supply.
    """
    def decorator(cls: type) -> type:
        def __class_getitem__(owner, params):
            if not isinstance(params, tuple):
                params = (params,)
            # Parameterizing a parameterization re-parameterizes the origin
            return make_reified_type(getattr(owner, '__origin__', owner), params)

        cls.__class_getitem__ = classmethod(__class_getitem__)
        cls.__origin__ = cls
        cls.__args__ = ()
        cls.__reified_arity__ = arity
        return cls
    return decorator


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def is_reified(t: Any) -> bool:
    """Check if ``t`` is a parameterized (reified) type."""
    return isinstance(t, ReifiedMeta)


def get_reified_args(t: type) -> tuple:
    """Type arguments of a parameterized type, ``()`` for the origin."""
    return getattr(t, '__args__', ())


def get_reified_origin(t: type) -> type:
    """Origin class of a parameterized type (the type itself otherwise)."""
    return getattr(t, '__origin__', t)


def clear_cache() -> None:
    """Clear the parameterization cache (for testing)."""
    with _reified_lock:
        _reified_cache.clear()
