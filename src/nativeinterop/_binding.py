"""Callable bindings for exported native functions."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from ._marshal import ArgumentPlan, CallScope, Marshaler
from ._schema import FunctionDefinition, ParameterDefinition
from .errors import EntryPointNotFound, MarshalingError, NativeInvocationError, UseAfterUnload

if TYPE_CHECKING:
    from ._registry import LoadedLibrary

logger = logging.getLogger(__name__)


def describe(func: FunctionDefinition) -> str:
    params = ", ".join(
        f"{'out ' if p.out else 'ref ' if p.by_ref else ''}{p.name}: {p.type}" for p in func.parameters
    )
    return f"{func.name}({params}) -> {func.returns}"


class CallBinding:
    """Invocable binding of one export.

    A binding is built once per export when its library loads and never
    changes afterwards. Calls are independent of each other: a failed call
    (bad arguments, an exception raised in a callback) leaves the binding
    usable, and concurrent calls from several threads are not serialised.

    Arguments are accepted positionally or by parameter name.
    """

    def __init__(self, library: LoadedLibrary, definition: FunctionDefinition, function: Any,
                 arguments: tuple[ArgumentPlan, ...], result: Callable[[Any, Mapping[str, Any]], Any]):
        self._library = library
        self._definition = definition
        self._function = function
        self._arguments = arguments
        self._result = result
        self.__doc__ = describe(definition)

    @property
    def name(self) -> str:
        return self._definition.name

    @property
    def definition(self) -> FunctionDefinition:
        return self._definition

    @property
    def library(self) -> LoadedLibrary:
        return self._library

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if not self._library.is_loaded:
            raise UseAfterUnload(self._library.name, self.name)
        values = self._bind(args, kwargs)

        with CallScope(self._library.ffi) as scope:
            native_args = []
            readbacks = []
            for param, plan, value in zip(self._definition.parameters, self._arguments, values):
                try:
                    arg, readback = plan(value, scope)
                except MarshalingError as exc:
                    raise self._parameter_error(param, exc) from None
                native_args.append(arg)
                if readback is not None:
                    readbacks.append((param, readback))

            try:
                result = self._function(*native_args)
            except (TypeError, OverflowError) as exc:
                raise MarshalingError(f"{self.name}: native call rejected its arguments: {exc}",
                                      library=self._library.name, export=self.name) from exc

            if scope.callback_errors:
                error = scope.callback_errors[0]
                raise NativeInvocationError(
                    f"{self.name}: callback raised {type(error).__name__}: {error}",
                    library=self._library.name, export=self.name) from error

            for param, readback in readbacks:
                try:
                    readback()
                except MarshalingError as exc:
                    raise self._parameter_error(param, exc) from None

            arguments = {p.name: v for p, v in zip(self._definition.parameters, values)}
            try:
                return self._result(result, arguments)
            except MarshalingError as exc:
                raise MarshalingError(f"{self.name}: return value: {exc.message}",
                                      **{**exc.context, "library": self._library.name,
                                         "export": self.name}) from None

    def _bind(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> list[Any]:
        params = self._definition.parameters
        if len(args) > len(params):
            raise MarshalingError(
                f"{self.name}() takes {len(params)} argument(s) but {len(args)} were given",
                library=self._library.name, export=self.name)
        values = list(args)
        for param in params[:len(args)]:
            if param.name in kwargs:
                raise MarshalingError(f"{self.name}() got multiple values for parameter '{param.name}'",
                                      library=self._library.name, export=self.name, parameter=param.name)
        remaining = dict(kwargs)
        for param in params[len(args):]:
            if param.name not in remaining:
                raise MarshalingError(f"{self.name}() missing argument for parameter '{param.name}'",
                                      library=self._library.name, export=self.name, parameter=param.name)
            values.append(remaining.pop(param.name))
        if remaining:
            unexpected = next(iter(remaining))
            raise MarshalingError(f"{self.name}() got an unexpected argument '{unexpected}'",
                                  library=self._library.name, export=self.name, parameter=unexpected)
        return values

    def _parameter_error(self, param: ParameterDefinition, exc: MarshalingError) -> MarshalingError:
        return MarshalingError(
            f"{self.name}: parameter '{param.name}' ({param.type}): {exc.message}",
            **{**exc.context, "library": self._library.name, "export": self.name, "parameter": param.name},
        )

    def __repr__(self) -> str:
        state = "" if self._library.is_loaded else " unloaded"
        return f"<binding {describe(self._definition)}{state}>"


class CallBindingFactory:
    """Builds the :class:`CallBinding` of every export of a library."""

    def __init__(self, library: LoadedLibrary, marshaler: Marshaler):
        self._library = library
        self._marshaler = marshaler

    def _symbol(self, func: FunctionDefinition) -> Any:
        try:
            return getattr(self._library.handle, func.entry_point)
        except AttributeError as exc:
            raise EntryPointNotFound(self._library.name, func.name, func.entry_point) from exc

    def build(self, func: FunctionDefinition) -> CallBinding:
        function = self._symbol(func)
        releaser = None
        if func.free_with is not None:
            releaser = self._symbol(self._library.schema.exports[func.free_with])
        arguments = tuple(self._marshaler.plan_argument(p) for p in func.parameters)
        result = self._marshaler.plan_result(func, releaser)
        logger.debug("Bound %s to entry point %s", describe(func), func.entry_point)
        return CallBinding(self._library, func, function, arguments, result)

    def build_all(self) -> dict[str, CallBinding]:
        return {name: self.build(func) for name, func in self._library.schema.exports.items()}
