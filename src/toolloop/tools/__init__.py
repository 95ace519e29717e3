"""
Tool registry for toolloop.

A tool is a named capability the oracle may ask the loop to invoke.  Each tool is described by a
:class:`ToolDeclaration` (name, description, input schema, handler) and lives in a
:class:`ToolRegistry`.  The oracle only ever sees :meth:`ToolDeclaration.spec` - the handler and the
execution context stay on this side.

Tools are usually declared with the registry decorator:

    registry = ToolRegistry()

    @registry.tool("get_weather")
    def get_weather(city: str) -> str:
        \"\"\"Retrieves the weather for a given city.\"\"\"
        return f"It's always sunny in {city}"
"""

import inspect
import logging
import types
from dataclasses import (
    dataclass,
    field,
)
from functools import cached_property
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypedDict,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    create_model,
)

from toolloop.core.errors import (
    DuplicateToolName,
    InvalidToolArguments,
    UnknownTool,
)
from toolloop.core.schema import ToolSpec

logger = logging.getLogger(__name__)

JSON_TYPES: Dict[type, str] = {str: "string", int: "integer", float: "number", bool: "boolean"}
"""Primitive Python types a tool parameter may use, and their JSON schema names."""

PYTHON_TYPES: Dict[str, type] = {name: py_type for py_type, name in JSON_TYPES.items()}

CONTEXT_PARAMETERS = ("ctx", "context")
"""Handler parameter names that receive the execution context instead of oracle input."""


class ParameterInfo(TypedDict):
    """
    Information about a tool parameter.
    """

    type: str
    required: bool
    description: str


def parameter(type_: str, required: bool = True, description: str = "") -> ParameterInfo:
    """Shorthand for building a :class:`ParameterInfo`."""
    if type_ not in PYTHON_TYPES:
        raise ValueError(f"Unsupported parameter type '{type_}'.")
    return ParameterInfo(type=type_, required=required, description=description)


@dataclass(frozen=True)
class ToolDeclaration:
    """A named, schema-validated capability.

    ``context_keys`` lists the execution-context keys the handler reads; the loop refuses to start
    when any of them is missing.  ``context_param`` names the handler argument that receives the
    context (``None`` when the handler does not need it).
    """

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: Mapping[str, ParameterInfo] = field(default_factory=dict)
    context_keys: Tuple[str, ...] = ()
    context_param: Optional[str] = None
    idempotent: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name must not be empty.")
        for param_name, info in self.parameters.items():
            if info["type"] not in PYTHON_TYPES:
                raise ValueError(
                    f"Tool '{self.name}' parameter '{param_name}' has unsupported type "
                    f"'{info['type']}'."
                )

    @cached_property
    def args_model(self) -> Type[BaseModel]:
        """Pydantic model used to validate oracle-supplied arguments."""
        fields: Dict[str, Any] = {}
        for param_name, info in self.parameters.items():
            py_type = PYTHON_TYPES[info["type"]]
            if info["required"]:
                fields[param_name] = (py_type, ...)
            else:
                fields[param_name] = (Optional[py_type], None)
        return create_model(  # type: ignore[call-overload]
            f"{self.name}_arguments", __config__=ConfigDict(extra="forbid"), **fields
        )

    def spec(self) -> ToolSpec:
        """Return what the oracle is allowed to see of this tool."""
        properties: Dict[str, Any] = {}
        for param_name, info in self.parameters.items():
            prop: Dict[str, Any] = {"type": info["type"]}
            if info["description"]:
                prop["description"] = info["description"]
            properties[param_name] = prop
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters={
                "type": "object",
                "properties": properties,
                "required": [p for p, info in self.parameters.items() if info["required"]],
                "additionalProperties": False,
            },
        )

    def validate(self, args: Union[Mapping[str, Any], str, None]) -> Dict[str, Any]:
        """Validate *args* against the input schema and return the handler keyword arguments.

        Raises
        ------
        InvalidToolArguments
            If *args* is not an object, misses a required field, carries an unknown field or a
            value of the wrong type.
        """
        if isinstance(args, str):
            raise InvalidToolArguments(self.name, f"arguments are not a JSON object: {args!r}")
        try:
            model = self.args_model.model_validate(args if args is not None else {})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            raise InvalidToolArguments(self.name, problems) from exc
        # Unset optional parameters fall back to the handler's own defaults.
        return model.model_dump(exclude_unset=True)


def _unwrap_optional(hint: Any) -> Tuple[Any, bool]:
    """Return ``(inner, True)`` for ``Optional[inner]`` / ``inner | None``."""
    if get_origin(hint) in (Union, types.UnionType):
        inner = [arg for arg in get_args(hint) if arg is not type(None)]
        if len(inner) == 1:
            return inner[0], True
    return hint, False


def declare_tool(
    fn: Callable[..., Any],
    name: str | None = None,
    *,
    description: str | None = None,
    context_keys: Iterable[str] = (),
    idempotent: bool = True,
) -> ToolDeclaration:
    """
    Build a :class:`ToolDeclaration` from a function signature.

    Parameter types come from the type hints (``str``, ``int``, ``float``, ``bool``, optionally
    wrapped in ``Optional``); parameters without a default are required.  A parameter named ``ctx``
    or ``context`` receives the execution context and is not part of the input schema.  The
    docstring is the default description.
    """
    tool_name = name or fn.__name__
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn)
    params: Dict[str, ParameterInfo] = {}
    context_param: str | None = None

    for param_name, param in sig.parameters.items():
        if param_name in CONTEXT_PARAMETERS:
            context_param = param_name
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        hint, optional = _unwrap_optional(type_hints.get(param_name, str))
        json_type = JSON_TYPES.get(hint)
        if json_type is None:
            raise TypeError(
                f"Tool '{tool_name}' parameter '{param_name}' must be annotated with "
                "str, int, float or bool."
            )
        params[param_name] = ParameterInfo(
            type=json_type,
            required=param.default is inspect.Parameter.empty and not optional,
            description="",
        )

    keys = tuple(context_keys)
    if keys and context_param is None:
        raise TypeError(
            f"Tool '{tool_name}' declares context keys but has no 'ctx' or 'context' parameter."
        )

    return ToolDeclaration(
        name=tool_name,
        description=description if description is not None else inspect.getdoc(fn) or "",
        handler=fn,
        parameters=params,
        context_keys=keys,
        context_param=context_param,
        idempotent=idempotent,
    )


class ToolRegistry:
    """
    Name -> declaration mapping offered to the oracle.

    Tools are offered in registration order, which stays the same for every round of a request.
    Call :meth:`freeze` once startup is done; a frozen registry is never written again and can be
    read from concurrent requests without locking.
    """

    def __init__(self, tools: Iterable[ToolDeclaration] = ()) -> None:
        self._tools: Dict[str, ToolDeclaration] = {}
        self._frozen = False
        for declaration in tools:
            self.register(declaration)

    def register(self, declaration: ToolDeclaration) -> ToolDeclaration:
        """
        Add *declaration* to the registry.

        Raises
        ------
        DuplicateToolName
            If a tool with the same name is already registered.
        RuntimeError
            If the registry has been frozen.
        """
        if self._frozen:
            raise RuntimeError("Tool registry is frozen.")
        if declaration.name in self._tools:
            raise DuplicateToolName(declaration.name)
        logger.debug("Registering tool '%s'", declaration.name)
        self._tools[declaration.name] = declaration
        return declaration

    def tool(
        self,
        name: str | None = None,
        *,
        description: str | None = None,
        context_keys: Iterable[str] = (),
        idempotent: bool = True,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator that declares the function as a tool and registers it."""

        def wrapper(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(
                declare_tool(
                    fn,
                    name,
                    description=description,
                    context_keys=context_keys,
                    idempotent=idempotent,
                )
            )
            return fn

        return wrapper

    def resolve(self, name: str) -> ToolDeclaration:
        """Return the declaration registered under *name* or raise ``UnknownTool``."""
        declaration = self._tools.get(name)
        if declaration is None:
            raise UnknownTool(name, self._tools.keys())
        return declaration

    def specs(self) -> List[ToolSpec]:
        """Tool specs in registration order."""
        return [declaration.spec() for declaration in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    def required_context_keys(self) -> Tuple[str, ...]:
        """Every context key read by any registered tool, without duplicates."""
        keys: Dict[str, None] = {}
        for declaration in self._tools.values():
            keys.update(dict.fromkeys(declaration.context_keys))
        return tuple(keys)

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDeclaration]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
