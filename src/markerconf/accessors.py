"""
Accessor layer: cached, reference-stable handles to introspected elements.

Three descriptor kinds share one base:

- TypeAccessor: a scannable class or module (the "owner" of members)
- MemberAccessor: a field, constant, property or indexer
- MethodAccessor: a function, static method, class method or overload

Every descriptor offers a universal boxed path (``get_value``/``set_value``/
``invoke``) that validates instance/static use and read/write capability, and,
where the element allows it, a direct typed path (``typed_getter``,
``typed_setter``, ``typed_delegate``) that skips all validation.

Caching is unconditional: a lookup for the same (owner, element) pair always
returns the identical descriptor object. Entries are never evicted; call
``AccessorCache.clear()`` only at teardown.
"""

import dataclasses
import functools
import inspect
import logging
import operator
import threading
from dataclasses import dataclass
from types import ModuleType
from typing import Annotated, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar, get_args, get_origin

from markerconf.errors import (
    ArgumentError,
    InvalidOperationError,
    MarkerConfError,
    MissingMemberError,
    MissingMethodError,
    ParameterCountError,
    describe_owner,
)
from markerconf.markers import FieldAnnotation, M, Marker, filter_markers, markers_of, runtime_class, unwrap_annotation

logger = logging.getLogger(__name__)

Owner = Any  # a class or a module

INDEXER_NAME = '__getitem__'

_EMPTY = inspect.Parameter.empty
_OMITTED = object()


# =============================================================================
# CACHE
# =============================================================================

class AccessorCache:
    """
    Process-lifetime store of descriptors.

    Reads are lock-free dictionary lookups; creation happens under a reentrant
    lock so two threads racing on the same key still observe one instance.
    """

    def __init__(self):
        self._entries: Dict[tuple, Any] = {}
        self._lock = threading.RLock()

    def get_or_create(self, key: tuple, factory: Callable[[], Any]) -> Any:
        existing = self._entries.get(key)
        if existing is not None:
            return existing
        with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                existing = factory()
                self._entries[key] = existing
            return existing

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple) -> bool:
        return key in self._entries

    def clear(self) -> None:
        """Drop every cached descriptor (teardown and tests only)."""
        with self._lock:
            self._entries.clear()
        logger.debug("Cleared accessor cache")


accessor_cache = AccessorCache()


def _resolve_cache(cache: Optional[AccessorCache]) -> AccessorCache:
    return accessor_cache if cache is None else cache


# =============================================================================
# INTROSPECTION HELPERS
# =============================================================================

def own_annotations(owner: Owner) -> Dict[str, Any]:
    """Annotations declared directly on ``owner``, evaluated when possible."""
    try:
        return dict(inspect.get_annotations(owner, eval_str=True))
    except Exception as e:
        logger.debug(f"Could not evaluate annotations of {describe_owner(owner)}: {e}")
    try:
        return dict(inspect.get_annotations(owner))
    except Exception as e:
        logger.debug(f"Could not read annotations of {describe_owner(owner)}: {e}")
        return {}


def _signature(function: Callable) -> Optional[inspect.Signature]:
    try:
        return inspect.signature(function, eval_str=True)
    except (NameError, TypeError, SyntaxError):
        pass
    except ValueError:
        return None
    try:
        return inspect.signature(function)
    except (TypeError, ValueError):
        return None


def _is_dunder(name: str) -> bool:
    return name.startswith('__') and name.endswith('__')


def _is_data_attribute(value: Any) -> bool:
    return not (
        inspect.isroutine(value)
        or isinstance(value, (property, staticmethod, classmethod, type, ModuleType,
                              functools.singledispatchmethod))
    )


def type_matches(given: Any, declared: Any, exact: bool = False) -> bool:
    """Whether an argument of type ``given`` is accepted by annotation ``declared``.

    Unannotated, ``Any`` and type-variable parameters accept everything but
    never count as an exact match.
    """
    if declared is _EMPTY or declared is Any or isinstance(declared, TypeVar):
        return not exact
    if given == declared:
        return True
    if exact:
        return False
    declared_cls = runtime_class(declared)
    return isinstance(given, type) and isinstance(declared_cls, type) and issubclass(given, declared_cls)


def _class_chain(owner: type) -> Tuple[type, ...]:
    return tuple(k for k in owner.__mro__ if k is not object)


# =============================================================================
# BASE
# =============================================================================

class AccessorBase:
    """Common surface of every descriptor: identity, static flag and markers."""

    kind = 'element'

    def __init__(self, owner: Owner, name: str, is_static: bool):
        self.owner = owner
        self.name = name
        self.is_static = is_static
        self._markers: Optional[Tuple[Marker, ...]] = None

    @property
    def declaring_type(self) -> Owner:
        return self.owner

    @property
    def qualified_name(self) -> str:
        return f"{describe_owner(self.owner)}.{self.name}"

    def _collect_markers(self) -> Tuple[Marker, ...]:
        raise NotImplementedError

    def get_markers(self, kind: Optional[Type[M]] = None) -> Tuple[M, ...]:
        """All attached markers, or only those that are instances of ``kind``."""
        if self._markers is None:
            self._markers = self._collect_markers()
        return filter_markers(self._markers, kind)

    def get_marker(self, kind: Type[M]) -> Optional[M]:
        found = self.get_markers(kind)
        return found[0] if found else None

    def has_marker(self, kind: Type[Marker]) -> bool:
        return self.get_marker(kind) is not None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.qualified_name}>"


# =============================================================================
# TYPE ACCESSOR
# =============================================================================

class TypeAccessor(AccessorBase):
    """Descriptor of a class or module."""

    kind = 'type'

    def __init__(self, target: Owner):
        super().__init__(target, getattr(target, '__name__', repr(target)),
                         is_static=isinstance(target, ModuleType))

    @property
    def type(self) -> Owner:
        return self.owner

    @property
    def qualified_name(self) -> str:
        return describe_owner(self.owner)

    def _collect_markers(self) -> Tuple[Marker, ...]:
        return markers_of(self.owner)

    @classmethod
    def get(cls, target: Owner, cache: Optional[AccessorCache] = None) -> 'TypeAccessor':
        if target is None:
            raise ArgumentError("target must not be None")
        return _resolve_cache(cache).get_or_create(('type', target), lambda: cls(target))

    def create_instance(self, *args: Any, **kwargs: Any) -> Any:
        """Instantiate the described class; logs and returns None on failure."""
        if not isinstance(self.owner, type):
            logger.error(f"Cannot instantiate module {self.qualified_name}")
            return None
        try:
            return self.owner(*args, **kwargs)
        except Exception:
            logger.exception(f"Failed to create instance of {self.qualified_name}")
            return None


# =============================================================================
# MEMBER ACCESSOR
# =============================================================================

class MemberAccessor(AccessorBase):
    """
    Field / constant / property / indexer descriptor.

    Static members ignore the ``instance`` argument of the boxed path; instance
    members require one. Indexers take their index arguments after the
    instance and have no typed path.
    """

    kind = 'member'

    def __init__(
        self,
        owner: Owner,
        name: str,
        member_kind: str,
        member_type: Any,
        is_static: bool,
        can_read: bool,
        can_write: bool,
        read: Optional[Callable[[Any, tuple], Any]],
        write: Optional[Callable[[Any, Any, tuple], None]],
        markers: Tuple[Marker, ...] = (),
        typed_getter: Optional[Callable] = None,
        typed_setter: Optional[Callable] = None,
        index_types: Optional[Tuple[type, ...]] = None,
    ):
        super().__init__(owner, name, is_static)
        self.member_kind = member_kind
        self.member_type = member_type
        self.can_read = can_read
        self.can_write = can_write
        self.index_types = index_types
        self.typed_getter = typed_getter
        self.typed_setter = typed_setter
        self._read = read
        self._write = write
        self._declared_markers = markers

    @property
    def is_indexer(self) -> bool:
        return self.index_types is not None

    def _collect_markers(self) -> Tuple[Marker, ...]:
        return self._declared_markers

    # ---------- boxed path ----------

    def _check_target(self, instance: Any, index_args: tuple) -> None:
        if self.is_indexer:
            if not index_args:
                raise InvalidOperationError(
                    f"{self.qualified_name} is an indexer; pass index arguments"
                )
            if len(index_args) != len(self.index_types):
                raise ArgumentError(
                    f"Indexer {self.qualified_name} expects {len(self.index_types)} "
                    f"index argument(s), got {len(index_args)}"
                )
        elif index_args:
            raise InvalidOperationError(f"{self.qualified_name} is not an indexer")
        if not self.is_static and instance is None:
            raise ArgumentError(f"Instance member {self.qualified_name} requires an instance")

    def get_value(self, instance: Any = None, *index_args: Any) -> Any:
        """Read the element through the validated path."""
        self._check_target(instance, index_args)
        if not self.can_read:
            raise InvalidOperationError(f"Member {self.qualified_name} is not readable")
        try:
            return self._read(instance, index_args)
        except MarkerConfError:
            raise
        except Exception as exc:
            raise InvalidOperationError(f"Reading {self.qualified_name} failed: {exc}") from exc

    def set_value(self, instance: Any, value: Any, *index_args: Any) -> None:
        """Write the element through the validated path."""
        self._check_target(instance, index_args)
        if not self.can_write:
            raise InvalidOperationError(f"Member {self.qualified_name} is read-only")
        try:
            self._write(instance, value, index_args)
        except MarkerConfError:
            raise
        except Exception as exc:
            raise InvalidOperationError(f"Writing {self.qualified_name} failed: {exc}") from exc

    # ---------- lookup ----------

    @classmethod
    def get(
        cls,
        owner: Owner,
        name: str,
        index_types: Optional[Sequence[type]] = None,
        cache: Optional[AccessorCache] = None,
    ) -> 'MemberAccessor':
        """Get the (cached) descriptor for ``owner.name``.

        Args:
            owner: Class or module.
            name: Member name; ``"__getitem__"`` together with ``index_types``
                selects the indexer.
            index_types: Index parameter types for indexer lookup.

        Raises:
            MissingMemberError: No such member (or no indexer for the types).
        """
        cache = _resolve_cache(cache)
        if index_types is not None:
            if name != INDEXER_NAME:
                raise MissingMemberError(owner, name, "index types given for a non-indexer name")
            types_key = tuple(index_types)
            return cache.get_or_create(
                ('indexer', owner, types_key),
                lambda: cls._create_indexer(owner, types_key, cache),
            )
        return cache.get_or_create(
            ('member-lookup', owner, name),
            lambda: cls._resolve(owner, name, cache),
        )

    @classmethod
    def get_all(cls, owner: Owner, cache: Optional[AccessorCache] = None) -> List['MemberAccessor']:
        """Members declared directly on ``owner`` (inherited ones are not repeated)."""
        cache = _resolve_cache(cache)
        annotations = own_annotations(owner)
        names = list(annotations)
        if not isinstance(owner, ModuleType):
            for name, value in vars(owner).items():
                if name in annotations or _is_dunder(name):
                    continue
                if isinstance(value, property) or _is_data_attribute(value):
                    names.append(name)

        result = []
        for name in names:
            if _is_dunder(name):
                continue
            try:
                result.append(cls._declared(owner, name, cache, annotations))
            except MissingMemberError:
                continue
        return result

    @classmethod
    def _resolve(cls, owner: Owner, name: str, cache: AccessorCache) -> 'MemberAccessor':
        if isinstance(owner, ModuleType):
            return cls._declared(owner, name, cache)
        if not isinstance(owner, type):
            raise MissingMemberError(owner, name, "owner must be a class or module")
        for klass in _class_chain(owner):
            if cls._declares(klass, name):
                return cls._declared(klass, name, cache)
        raise MissingMemberError(owner, name)

    @staticmethod
    def _declares(klass: type, name: str) -> bool:
        namespace = vars(klass)
        if name in namespace:
            value = namespace[name]
            return isinstance(value, property) or _is_data_attribute(value)
        return name in own_annotations(klass)

    @classmethod
    def _declared(
        cls,
        owner: Owner,
        name: str,
        cache: AccessorCache,
        annotations: Optional[Dict[str, Any]] = None,
    ) -> 'MemberAccessor':
        return cache.get_or_create(
            ('member', owner, name),
            lambda: cls._create(owner, name, annotations),
        )

    @classmethod
    def _create(cls, owner: Owner, name: str, annotations: Optional[Dict[str, Any]]) -> 'MemberAccessor':
        namespace = vars(owner)
        raw = namespace.get(name, _OMITTED)
        if isinstance(raw, property):
            return cls._create_property(owner, name, raw)

        if annotations is None:
            annotations = own_annotations(owner)
        if name in annotations:
            field_ann = unwrap_annotation(annotations[name])
        elif raw is not _OMITTED and _is_data_attribute(raw) and not isinstance(owner, ModuleType):
            field_ann = FieldAnnotation(value_type=type(raw))
        else:
            raise MissingMemberError(owner, name)
        return cls._create_field(owner, name, field_ann, has_value=raw is not _OMITTED)

    @classmethod
    def _create_field(cls, owner: Owner, name: str, ann: FieldAnnotation, has_value: bool) -> 'MemberAccessor':
        dataclass_fields = vars(owner).get('__dataclass_fields__', {}) if isinstance(owner, type) else {}
        if isinstance(owner, ModuleType) or ann.is_classvar:
            is_static = True
        elif name in dataclass_fields:
            is_static = False
        else:
            is_static = has_value

        read_only = ann.is_final
        if not is_static and isinstance(owner, type):
            params = vars(owner).get('__dataclass_params__')
            read_only = read_only or bool(params is not None and params.frozen)

        member_type = ann.value_type
        if member_type is Any and has_value:
            member_type = type(vars(owner)[name])

        if is_static:
            typed_getter = functools.partial(getattr, owner, name)
            typed_setter = None if read_only else functools.partial(setattr, owner, name)
            read = lambda instance, index: getattr(owner, name)
            write = lambda instance, value, index: setattr(owner, name, value)
        else:
            typed_getter = operator.attrgetter(name)
            typed_setter = None if read_only else _instance_setter(name)
            read = lambda instance, index: getattr(instance, name)
            write = lambda instance, value, index: setattr(instance, name, value)

        return cls(
            owner, name,
            member_kind='constant' if ann.is_final else 'field',
            member_type=member_type,
            is_static=is_static,
            can_read=True,
            can_write=not read_only,
            read=read,
            write=None if read_only else write,
            markers=ann.markers,
            typed_getter=typed_getter,
            typed_setter=typed_setter,
        )

    @classmethod
    def _create_property(cls, owner: Owner, name: str, prop: property) -> 'MemberAccessor':
        member_type: Any = object
        if prop.fget is not None:
            signature = _signature(prop.fget)
            if signature is not None and signature.return_annotation is not _EMPTY:
                member_type = unwrap_annotation(signature.return_annotation).value_type
        can_read = prop.fget is not None
        can_write = prop.fset is not None
        return cls(
            owner, name,
            member_kind='property',
            member_type=member_type,
            is_static=False,
            can_read=can_read,
            can_write=can_write,
            read=lambda instance, index: getattr(instance, name),
            write=lambda instance, value, index: setattr(instance, name, value),
            markers=markers_of(prop) if can_read else (),
            typed_getter=operator.attrgetter(name) if can_read else None,
            typed_setter=_instance_setter(name) if can_write else None,
        )

    @classmethod
    def _create_indexer(cls, owner: Owner, index_types: Tuple[type, ...], cache: AccessorCache) -> 'MemberAccessor':
        if not isinstance(owner, type) or not index_types:
            raise MissingMemberError(owner, INDEXER_NAME, "indexers need a class and at least one index type")
        getitem = _find_routine(owner, '__getitem__')
        if getitem is None:
            raise MissingMemberError(owner, INDEXER_NAME, "type has no indexer")
        declaring, function = getitem

        member_type: Any = object
        signature = _signature(function)
        if signature is not None:
            params = list(signature.parameters.values())[1:]
            if params:
                declared = params[0].annotation
                if not _index_matches(index_types, declared):
                    raise MissingMemberError(
                        owner, INDEXER_NAME,
                        f"no indexer accepting ({', '.join(t.__name__ for t in index_types)})",
                    )
            if signature.return_annotation is not _EMPTY:
                member_type = signature.return_annotation

        # Indexers on a base class are shared by every subclass lookup
        if declaring is not owner:
            return cache.get_or_create(
                ('indexer', declaring, index_types),
                lambda: cls._create_indexer(declaring, index_types, cache),
            )

        can_write = _find_routine(owner, '__setitem__') is not None

        def read(instance, index):
            return instance[index[0] if len(index) == 1 else tuple(index)]

        def write(instance, value, index):
            instance[index[0] if len(index) == 1 else tuple(index)] = value

        return cls(
            owner, INDEXER_NAME,
            member_kind='indexer',
            member_type=member_type,
            is_static=False,
            can_read=True,
            can_write=can_write,
            read=read,
            write=write if can_write else None,
            markers=markers_of(function),
            index_types=index_types,
        )


def _instance_setter(name: str) -> Callable[[Any, Any], None]:
    def setter(target: Any, value: Any) -> None:
        setattr(target, name, value)
    return setter


def _find_routine(owner: type, name: str) -> Optional[Tuple[type, Callable]]:
    for klass in _class_chain(owner):
        value = vars(klass).get(name)
        if value is not None and callable(value):
            return klass, value
    return None


def _index_matches(index_types: Tuple[type, ...], declared: Any) -> bool:
    if declared is _EMPTY or declared is Any:
        return True
    if len(index_types) == 1:
        return type_matches(index_types[0], declared, exact=False)
    if get_origin(declared) is not tuple:
        return False
    declared_args = get_args(declared)
    if len(declared_args) != len(index_types):
        return False
    return all(type_matches(g, d, exact=False) for g, d in zip(index_types, declared_args))


# =============================================================================
# REFERENCE / OUTPUT PARAMETERS
# =============================================================================

@dataclass(frozen=True)
class ByRef:
    """Annotation metadata flagging a by-reference parameter."""
    out: bool = False


class Ref:
    """``Ref[T]``: parameter receives a ``Cell`` whose value is read back."""

    def __class_getitem__(cls, item):
        return Annotated[item, ByRef()]


class Out:
    """``Out[T]``: like ``Ref[T]`` but the caller need not supply a value."""

    def __class_getitem__(cls, item):
        return Annotated[item, ByRef(out=True)]


@dataclass
class Cell:
    """Mutable box handed to ``Ref``/``Out`` parameters."""
    value: Any = None


# =============================================================================
# METHOD ACCESSOR
# =============================================================================

STATIC = 'static'
CLASS = 'class'
INSTANCE = 'instance'


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    annotation: Any
    has_default: bool
    default: Any = None
    by_ref: bool = False
    is_out: bool = False


def _parameter_spec(param: inspect.Parameter) -> ParameterSpec:
    annotation = param.annotation
    by_ref = None
    if get_origin(annotation) is Annotated:
        for meta in annotation.__metadata__:
            if isinstance(meta, ByRef):
                by_ref = meta
        annotation = get_args(annotation)[0]
    has_default = param.default is not _EMPTY
    return ParameterSpec(
        name=param.name,
        annotation=annotation,
        has_default=has_default,
        default=param.default if has_default else None,
        by_ref=by_ref is not None,
        is_out=bool(by_ref is not None and by_ref.out),
    )


def _collect_type_vars(annotations: Sequence[Any], exclude: Sequence[TypeVar] = ()) -> Tuple[TypeVar, ...]:
    found: List[TypeVar] = []

    def walk(annotation: Any) -> None:
        if isinstance(annotation, TypeVar):
            if annotation not in found and annotation not in exclude:
                found.append(annotation)
            return
        for arg in get_args(annotation):
            walk(arg)

    for annotation in annotations:
        walk(annotation)
    return tuple(found)


def _substitute(annotation: Any, mapping: Dict[TypeVar, Any]) -> Any:
    if isinstance(annotation, TypeVar):
        return mapping.get(annotation, annotation)
    params = getattr(annotation, '__parameters__', ())
    if params:
        try:
            return annotation[tuple(mapping.get(p, p) for p in params)]
        except TypeError:
            return annotation
    return annotation


class MethodAccessor(AccessorBase):
    """
    Function / static method / class method descriptor.

    Invocation paths:
    - ``invoke(instance, *args)``: boxed; backfills declared defaults for
      omitted trailing parameters.
    - ``invoke_array(instance, args)``: general path; required for ``Ref``/
      ``Out`` parameters, whose final values are written back into ``args``.
    - ``invoke0`` .. ``invoke3``: fixed-arity fast path without building an
      argument list.
    - ``invoke_void``: for methods returning None.
    - ``typed_delegate``: the raw callable, when the method has no by-ref or
      optional parameters and no unbound type parameters.
    """

    kind = 'method'

    def __init__(
        self,
        owner: Owner,
        name: str,
        function: Callable,
        binding: str,
        cache: Optional[AccessorCache] = None,
        type_arguments: Tuple[Any, ...] = (),
        definition: Optional['MethodAccessor'] = None,
    ):
        super().__init__(owner, name, is_static=binding != INSTANCE)
        self.function = function
        self.binding = binding
        self.definition = definition
        self._cache = _resolve_cache(cache)

        signature = _signature(function)
        params = list(signature.parameters.values()) if signature is not None else []
        if binding in (INSTANCE, CLASS) and params and params[0].kind in (
            inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD
        ):
            params = params[1:]
        positional = [p for p in params if p.kind in (
            inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD
        )]
        self.accepts_varargs = any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in params)
        # Positional invocation can never supply these
        self.required_keywords = tuple(
            p.name for p in params if p.kind is inspect.Parameter.KEYWORD_ONLY and p.default is _EMPTY
        )
        specs = [_parameter_spec(p) for p in positional]
        return_annotation = signature.return_annotation if signature is not None else _EMPTY

        if definition is None:
            owner_params = tuple(getattr(owner, '__parameters__', ()) or ())
            declared = tuple(getattr(function, '__type_params__', ()) or ())
            inferred = _collect_type_vars([s.annotation for s in specs] + [return_annotation], owner_params)
            self.type_parameters = declared + tuple(t for t in inferred if t not in declared)
        else:
            self.type_parameters = definition.type_parameters
        self.type_arguments = tuple(type_arguments)

        if self.type_arguments:
            mapping = dict(zip(self.type_parameters, self.type_arguments))
            specs = [dataclasses.replace(s, annotation=_substitute(s.annotation, mapping)) for s in specs]
            return_annotation = _substitute(return_annotation, mapping)

        self.parameters: Tuple[ParameterSpec, ...] = tuple(specs)
        self.return_type = return_annotation
        self.returns_void = return_annotation is None or return_annotation is type(None)
        self.required_count = (
            sum(1 for s in specs if not s.has_default and not s.is_out) + len(self.required_keywords)
        )
        self.has_by_ref = any(s.by_ref for s in specs)
        self.has_optional = any(s.has_default for s in specs)

        if self.is_generic_definition or self.has_by_ref or self.has_optional or self.required_keywords:
            self.typed_delegate = None
        elif binding == CLASS:
            self.typed_delegate = functools.partial(function, owner)
        else:
            self.typed_delegate = function

    @property
    def is_generic_definition(self) -> bool:
        return bool(self.type_parameters) and not self.type_arguments

    @property
    def parameter_types(self) -> Tuple[Any, ...]:
        return tuple(p.annotation for p in self.parameters)

    def _collect_markers(self) -> Tuple[Marker, ...]:
        if self.definition is not None:
            return self.definition.get_markers()
        return markers_of(self.function)

    # ---------- matching ----------

    def matches(self, param_types: Sequence[Any], exact: bool = False) -> bool:
        """Check whether the given argument types select this overload.

        Unbound type parameters match anything; parameters beyond
        ``param_types`` must be optional.
        """
        params = self.parameters
        if len(param_types) > len(params) and not self.accepts_varargs:
            return False
        for given, spec in zip(param_types, params):
            if not type_matches(given, spec.annotation, exact):
                return False
        return all(spec.has_default for spec in params[len(param_types):])

    # ---------- generics ----------

    def make_generic(self, *type_arguments: Any) -> 'MethodAccessor':
        """Close an unbound generic method over concrete types (cached)."""
        if not self.is_generic_definition:
            raise InvalidOperationError(f"{self.qualified_name} is not a generic method definition")
        if len(type_arguments) != len(self.type_parameters):
            raise ArgumentError(
                f"{self.qualified_name} takes {len(self.type_parameters)} type argument(s), "
                f"got {len(type_arguments)}"
            )
        key = ('method', self.owner, self.function, tuple(type_arguments))
        return self._cache.get_or_create(key, lambda: MethodAccessor(
            self.owner, self.name, self.function, self.binding,
            cache=self._cache, type_arguments=tuple(type_arguments), definition=self,
        ))

    # ---------- invocation ----------

    def _check_invocable(self, instance: Any) -> None:
        if self.is_generic_definition:
            raise InvalidOperationError(
                f"{self.qualified_name} is a generic method definition; call make_generic(...) first"
            )
        if self.required_keywords:
            raise ParameterCountError(
                f"{self.qualified_name} has required keyword-only parameter(s) "
                f"{', '.join(self.required_keywords)} that positional invocation cannot supply"
            )
        if self.binding == INSTANCE:
            if instance is None:
                raise ArgumentError(f"Instance method {self.qualified_name} requires an instance")
            if isinstance(self.owner, type) and not isinstance(instance, self.owner):
                raise ArgumentError(
                    f"{self.qualified_name} cannot be invoked on {type(instance).__name__}"
                )

    def _call(self, instance: Any, args: Sequence[Any]) -> Any:
        if self.binding == STATIC:
            return self.function(*args)
        if self.binding == CLASS:
            if instance is None:
                klass = self.owner
            else:
                klass = instance if isinstance(instance, type) else type(instance)
            return self.function(klass, *args)
        return self.function(instance, *args)

    def invoke(self, instance: Any = None, *args: Any) -> Any:
        """Boxed invocation; omitted trailing optional parameters use their defaults."""
        return self.invoke_array(instance, list(args))

    def invoke_array(self, instance: Any, args: List[Any]) -> Any:
        """General invocation path.

        ``args`` is read positionally; ``Ref``/``Out`` parameter results are
        written back into it (it is extended to full length when needed).
        """
        self._check_invocable(instance)
        total = len(self.parameters)
        if len(args) > total and not self.accepts_varargs:
            raise ParameterCountError(
                f"Too many arguments for {self.qualified_name}: expected {total}, got {len(args)}"
            )
        if self.has_by_ref and len(args) < total:
            args.extend([_OMITTED] * (total - len(args)))

        call_args: List[Any] = []
        for i, spec in enumerate(self.parameters):
            if i < len(args) and args[i] is not _OMITTED:
                value = args[i]
            elif spec.is_out:
                value = None
            elif spec.has_default:
                value = spec.default
            else:
                raise ParameterCountError(
                    f"Parameter '{spec.name}' of {self.qualified_name} has no default and was not supplied"
                )
            call_args.append(Cell(value) if spec.by_ref else value)
        call_args.extend(args[total:])

        result = self._call(instance, call_args)

        if self.has_by_ref:
            for i, spec in enumerate(self.parameters):
                if spec.by_ref:
                    args[i] = call_args[i].value
        return result

    def _invoke_fast(self, instance: Any, args: tuple) -> Any:
        if self.has_by_ref:
            raise InvalidOperationError(
                f"{self.qualified_name} has reference/output parameters; use invoke_array()"
            )
        self._check_invocable(instance)
        count = len(args)
        total = len(self.parameters)
        if count < self.required_count or (count > total and not self.accepts_varargs):
            raise ParameterCountError(
                f"{self.qualified_name} expects {self.required_count}..{total} arguments, got {count}"
            )
        if count < total:
            return self.invoke_array(instance, list(args))
        return self._call(instance, args)

    def invoke0(self, instance: Any = None) -> Any:
        return self._invoke_fast(instance, ())

    def invoke1(self, instance: Any, a: Any) -> Any:
        return self._invoke_fast(instance, (a,))

    def invoke2(self, instance: Any, a: Any, b: Any) -> Any:
        return self._invoke_fast(instance, (a, b))

    def invoke3(self, instance: Any, a: Any, b: Any, c: Any) -> Any:
        return self._invoke_fast(instance, (a, b, c))

    def invoke_void(self, instance: Any = None, *args: Any) -> None:
        """Invoke for side effects only."""
        self.invoke_array(instance, list(args))

    # ---------- lookup ----------

    @classmethod
    def get(
        cls,
        owner: Owner,
        name: str,
        param_types: Optional[Sequence[Any]] = None,
        cache: Optional[AccessorCache] = None,
    ) -> 'MethodAccessor':
        """Get the (cached) descriptor of a method.

        Args:
            owner: Class or module.
            name: Method name.
            param_types: Argument types selecting an overload. ``None`` picks
                the primary implementation.

        Raises:
            MissingMethodError: Unknown name or no overload accepts the types.
        """
        cache = _resolve_cache(cache)
        candidates = _method_candidates(owner, name)
        if not candidates:
            raise MissingMethodError(owner, name)
        accessors = [cls._for_function(decl, name, func, binding, cache) for decl, func, binding in candidates]
        if param_types is None:
            return accessors[0]
        for exact in (True, False):
            for accessor in accessors:
                if accessor.matches(param_types, exact=exact):
                    return accessor
        names = ', '.join(getattr(t, '__name__', repr(t)) for t in param_types)
        raise MissingMethodError(owner, name, f"no overload accepts ({names})")

    @classmethod
    def get_all(cls, owner: Owner, cache: Optional[AccessorCache] = None) -> List['MethodAccessor']:
        """Methods declared directly on ``owner``."""
        cache = _resolve_cache(cache)
        result = []
        for name, value in list(vars(owner).items()):
            if _is_dunder(name):
                continue
            for decl, func, binding in _declared_routines(owner, name, value):
                accessor = cls._for_function(decl, name, func, binding, cache)
                # singledispatch registrations stay reachable under their own names too
                if accessor not in result:
                    result.append(accessor)
        return result

    @classmethod
    def _for_function(cls, owner: Owner, name: str, function: Callable, binding: str,
                      cache: AccessorCache) -> 'MethodAccessor':
        return cache.get_or_create(
            ('method', owner, function),
            lambda: cls(owner, name, function, binding, cache=cache),
        )


def _binding_of(raw: Any) -> Tuple[Optional[Callable], str]:
    if isinstance(raw, staticmethod):
        return raw.__func__, STATIC
    if isinstance(raw, classmethod):
        return raw.__func__, CLASS
    if inspect.isfunction(raw):
        return raw, INSTANCE
    return None, INSTANCE


def _declared_routines(owner: Owner, name: str, value: Any) -> List[Tuple[Owner, Callable, str]]:
    if isinstance(owner, ModuleType):
        if inspect.isfunction(value) and value.__module__ == owner.__name__:
            return [(owner, value, STATIC)]
        return []
    if isinstance(value, functools.singledispatchmethod):
        found = []
        seen = set()
        default, default_binding = _binding_of(value.func)
        if default is not None:
            found.append((owner, default, default_binding))
            seen.add(default)
        for impl in value.dispatcher.registry.values():
            func, binding = _binding_of(impl)
            if func is None or func in seen:
                continue
            seen.add(func)
            found.append((owner, func, binding if func is not impl else default_binding))
        return found
    func, binding = _binding_of(value)
    if func is None:
        return []
    return [(owner, func, binding)]


def _method_candidates(owner: Owner, name: str) -> List[Tuple[Owner, Callable, str]]:
    if isinstance(owner, ModuleType):
        value = vars(owner).get(name)
        if value is None or not inspect.isfunction(value):
            return []
        found = [(owner, value, STATIC)]
        registry = getattr(value, 'registry', None)
        if isinstance(registry, dict) or hasattr(registry, 'values'):
            found.extend((owner, impl, STATIC) for impl in registry.values() if impl is not value)
        return found
    if not isinstance(owner, type):
        return []
    for klass in _class_chain(owner):
        if name in vars(klass):
            return _declared_routines(klass, name, vars(klass)[name])
    return []


def iter_element_accessors(target: Owner, cache: Optional[AccessorCache] = None) -> Iterator[AccessorBase]:
    """The target's own descriptor followed by its methods and members."""
    yield TypeAccessor.get(target, cache)
    yield from MethodAccessor.get_all(target, cache)
    yield from MemberAccessor.get_all(target, cache)
