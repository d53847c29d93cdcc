from collections import OrderedDict
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, NamedTuple, Sequence

from jeonse_deployment.constants import ContractKind
from jeonse_deployment.errors import ConfigurationError, CyclicDependencyError


class ContractSpec(NamedTuple):
    """
    A contract to deploy plus its constructor parameters.
    A parameter value that is a ContractKind stands for the address of that
    (already deployed) contract; any other value is passed through as is.
    """

    kind: ContractKind
    constructor_params: Mapping[str, Any] = MappingProxyType(OrderedDict())

    @property
    def dependencies(self) -> List[ContractKind]:
        found = list()
        for value in self.constructor_params.values():
            for kind in _find_kinds(value):
                if kind not in found:
                    found.append(kind)
        return found


def _find_kinds(value: Any) -> Iterable[ContractKind]:
    if isinstance(value, ContractKind):
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _find_kinds(item)


def _index_specs(specs: Sequence[ContractSpec]) -> "OrderedDict[ContractKind, ContractSpec]":
    indexed = OrderedDict()
    for spec in specs:
        if spec.kind in indexed:
            raise ConfigurationError(f"{spec.kind} is declared more than once")
        indexed[spec.kind] = spec
    for spec in indexed.values():
        for dependency in spec.dependencies:
            if dependency not in indexed:
                raise ConfigurationError(
                    f"{spec.kind} depends on {dependency}, which is not part of the deployment"
                )
    return indexed


def _find_cycle(remaining: "OrderedDict[ContractKind, ContractSpec]") -> List[ContractKind]:
    """Walks dependency edges among unresolved specs until a node repeats."""
    path = list()
    node = next(iter(remaining))
    while node not in path:
        path.append(node)
        node = next(d for d in remaining[node].dependencies if d in remaining)
    return path[path.index(node) :]


def resolve_order(specs: Sequence[ContractSpec]) -> List[ContractKind]:
    """
    Returns the deployment order of the given specs: every contract comes after
    all contracts it depends on. Ties are broken by declaration order, so the
    result is identical across runs.
    """
    remaining = _index_specs(specs)
    order = list()
    while remaining:
        ready = next(
            (
                kind
                for kind, spec in remaining.items()
                if all(dependency in order for dependency in spec.dependencies)
            ),
            None,
        )
        if ready is None:
            raise CyclicDependencyError(members=_find_cycle(remaining))
        order.append(ready)
        del remaining[ready]
    return order
