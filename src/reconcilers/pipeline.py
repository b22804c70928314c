"""
Mutator Pipeline - Ordered composition of mutate functions for one kind.

A mutate function takes a read-only desired object and a mutable existing
object, converges one field group of ``existing`` towards ``desired`` and
returns whether it changed anything. Errors are raised, never returned.

Mutators may declare an ordering contract with :func:`mutator`: a mutator
that ``requires`` a guarantee (e.g. ``"containers"``: existing has the same
containers as desired) must be preceded by a mutator that ``provides`` it.
The contract is checked once, when the pipeline is built.
"""

import logging
from typing import Any, Callable, Generic, Iterable, List, Tuple, Type, TypeVar

from errors import PipelineOrderError, TypeMismatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MutateFn = Callable[[Any, Any], bool]


def mutator(
    requires: Iterable[str] = (), provides: Iterable[str] = ()
) -> Callable[[MutateFn], MutateFn]:
    """Declare what a mutate function needs from, and guarantees to, later mutators."""

    def decorate(fn: MutateFn) -> MutateFn:
        fn.requires = tuple(requires)
        fn.provides = tuple(provides)
        return fn

    return decorate


def mutator_name(fn: MutateFn) -> str:
    return getattr(fn, "__name__", None) or repr(fn)


def validate_order(mutators: Iterable[MutateFn]) -> None:
    """
    Check that every requirement is provided by an earlier mutator.

    Raises:
        PipelineOrderError: On the first unmet requirement.
    """
    provided = set()
    for fn in mutators:
        missing = [r for r in getattr(fn, "requires", ()) if r not in provided]
        if missing:
            raise PipelineOrderError(
                f"Mutator '{mutator_name(fn)}' requires {', '.join(missing)} "
                f"but no earlier mutator provides it"
            )
        provided.update(getattr(fn, "provides", ()))


class MutatorPipeline(Generic[T]):
    """
    Ordered list of mutate functions for objects of type ``kind``.

    Running the pipeline ORs the individual results and stops at the first
    exception; whatever earlier mutators wrote into ``existing`` stays in
    memory but nothing is written back to the cluster.
    """

    def __init__(self, kind: Type[T], *mutators: MutateFn):
        validate_order(mutators)
        self.kind = kind
        self.mutators: Tuple[MutateFn, ...] = tuple(mutators)

    @property
    def names(self) -> List[str]:
        return [mutator_name(fn) for fn in self.mutators]

    def run(self, desired: T, existing: T) -> bool:
        """
        Apply every mutator in order.

        Returns:
            Whether any mutator changed ``existing``.

        Raises:
            TypeMismatchError: If either object is not a ``kind``.
        """
        for label, obj in (("desired", desired), ("existing", existing)):
            if not isinstance(obj, self.kind):
                raise TypeMismatchError(
                    f"{label} object {type(obj).__name__} is not a "
                    f"{self.kind.__name__}"
                )

        changed = False
        for fn in self.mutators:
            if fn(desired, existing):
                logger.debug(f"Mutator {mutator_name(fn)} changed the object")
                changed = True
        return changed

    def __call__(self, desired: T, existing: T) -> bool:
        return self.run(desired, existing)

    def __len__(self) -> int:
        return len(self.mutators)

    def __repr__(self) -> str:
        return f"MutatorPipeline({self.kind.__name__}, {', '.join(self.names)})"
