"""Customization unit registry.

This module handles:
- Declaring customization units with a stage, failure policy and write set
- Validating that stage order is monotonic and write sets do not collide
- Applying units in order and recording every outcome in the build manifest

Units in a later stage always run after every unit of an earlier stage, so a
final-configuration unit writing into /etc/skel overrides what a restore
unit copied there. Two units of the same stage may only write overlapping
paths when the later one declares that it supersedes the earlier one.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from emcomm_isogen.builds.manifest import KIND_UNIT
from emcomm_isogen.errors import (
    BuildCancelled,
    CustomizationUnitFailure,
    OrderingViolation,
)
from emcomm_isogen.types import UnitOutcome, UnitPolicy, UnitStage

if TYPE_CHECKING:
    from emcomm_isogen.builds.context import BuildContext

logger = logging.getLogger(__name__)

UnitFn = Callable[[Path, "BuildContext"], None]

GLOB_CHARS = frozenset("*?[")


class UnitSkipped(Exception):
    """Raised by a unit to report that it had nothing to do."""


@dataclass(frozen=True)
class CustomizationUnit:
    """A named modification of the image root filesystem.

    Attributes:
        name: Unique unit name.
        stage: Ordering stage.
        policy: Whether a failure aborts the build.
        writes: Glob patterns, relative to the image root, the unit may write.
        apply: Callable receiving the image root and the build context.
        description: One-line description.
        supersedes: Same-stage units whose writes this unit may override.
    """

    name: str
    stage: UnitStage
    policy: UnitPolicy
    writes: tuple[str, ...]
    apply: UnitFn
    description: str = ""
    supersedes: tuple[str, ...] = ()


@dataclass
class UnitResult:
    name: str
    outcome: UnitOutcome
    duration: float = 0.0
    message: str | None = None
    error: BaseException | None = field(default=None, repr=False)


def literal_prefix(pattern: str) -> tuple[str, ...]:
    """Return the path components of a pattern before the first glob component."""
    parts: list[str] = []
    for part in PurePosixPath(pattern.lstrip("/")).parts:
        if GLOB_CHARS.intersection(part):
            break
        parts.append(part)
    return tuple(parts)


def _is_exact(pattern: str) -> bool:
    return not GLOB_CHARS.intersection(pattern)


def patterns_overlap(a: str, b: str) -> bool:
    """Check whether two write patterns may touch the same path.

    Exact paths overlap only when equal or when one lies under the other's
    literal prefix. A glob pattern covers everything below its literal prefix.
    """
    pa, pb = literal_prefix(a), literal_prefix(b)
    if _is_exact(a) and _is_exact(b):
        return pa == pb
    if _is_exact(a):
        return pa[: len(pb)] == pb
    if _is_exact(b):
        return pb[: len(pa)] == pa
    shorter = min(len(pa), len(pb))
    return pa[:shorter] == pb[:shorter]


def writes_overlap(a: Iterable[str], b: Iterable[str]) -> list[tuple[str, str]]:
    """Return every overlapping (a, b) pattern pair."""
    b = list(b)
    return [(pa, pb) for pa in a for pb in b if patterns_overlap(pa, pb)]


class Registry:
    """Ordered collection of customization units."""

    def __init__(self, units: Iterable[CustomizationUnit] = ()) -> None:
        self._units: list[CustomizationUnit] = []
        for unit in units:
            self.register(unit)

    def __iter__(self) -> Iterator[CustomizationUnit]:
        return iter(self._units)

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, name: object) -> bool:
        return any(u.name == name for u in self._units)

    @property
    def units(self) -> list[CustomizationUnit]:
        return list(self._units)

    def get(self, name: str) -> CustomizationUnit:
        for unit in self._units:
            if unit.name == name:
                return unit
        raise KeyError(name)

    def register(self, unit: CustomizationUnit) -> CustomizationUnit:
        """Append a unit.

        Raises:
            ValueError: If a unit with the same name is already registered.
        """
        if unit.name in self:
            raise ValueError(f"Unit already registered: {unit.name}")
        self._units.append(unit)
        return unit

    def unit(
        self,
        name: str,
        stage: UnitStage,
        policy: UnitPolicy = UnitPolicy.DEFERRABLE,
        writes: Sequence[str] = (),
        description: str = "",
        supersedes: Sequence[str] = (),
    ) -> Callable[[UnitFn], UnitFn]:
        """Decorator registering a function as a unit."""

        def decorator(fn: UnitFn) -> UnitFn:
            self.register(
                CustomizationUnit(
                    name=name,
                    stage=stage,
                    policy=policy,
                    writes=tuple(writes),
                    apply=fn,
                    description=description or (fn.__doc__ or "").strip().split("\n")[0],
                    supersedes=tuple(supersedes),
                )
            )
            return fn

        return decorator

    def validate(self) -> None:
        """Check stage order and write-set conflicts.

        Raises:
            OrderingViolation: If a unit is registered after a unit of a later
                stage, supersedes an unknown or later unit, or shares a write
                path with another unit of its stage without superseding it.
        """
        highest: CustomizationUnit | None = None
        for unit in self._units:
            if highest is not None and unit.stage < highest.stage:
                raise OrderingViolation(
                    f"Unit {unit.name} ({unit.stage.label}) is registered after "
                    f"{highest.name} ({highest.stage.label})",
                    units=(highest.name, unit.name),
                    code="stage_order",
                )
            if highest is None or unit.stage > highest.stage:
                highest = unit

        for index, unit in enumerate(self._units):
            earlier = {u.name for u in self._units[:index]}
            for name in unit.supersedes:
                if name not in earlier:
                    raise OrderingViolation(
                        f"Unit {unit.name} supersedes {name}, which does not run before it",
                        units=(unit.name, name),
                        code="unknown_supersedes",
                    )

        for index, later in enumerate(self._units):
            for earlier in self._units[:index]:
                if earlier.stage != later.stage:
                    continue
                if earlier.name in later.supersedes:
                    continue
                conflicts = writes_overlap(earlier.writes, later.writes)
                if conflicts:
                    first, second = conflicts[0]
                    raise OrderingViolation(
                        f"Units {earlier.name} and {later.name} both write "
                        f"{first} / {second} in stage {later.stage.label}",
                        units=(earlier.name, later.name),
                        code="path_conflict",
                    )

    def apply(
        self, unit: CustomizationUnit, build: BuildContext, root: Path | None = None
    ) -> UnitResult:
        """Apply one unit and record its outcome.

        Unit errors become a failed result. Cancellation is recorded as a
        failed entry and then propagates.

        Args:
            unit: Unit to apply.
            build: Build context; its manifest receives the outcome.
            root: Image root; defaults to the build's image root.

        Returns:
            UnitResult with outcome applied, skipped or failed.

        Raises:
            BuildCancelled: If the unit was interrupted.
            KeyboardInterrupt: If the unit was interrupted outside a command.
        """
        root = root if root is not None else build.root
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        logger.info("Applying %s (%s)", unit.name, unit.stage.label)
        try:
            unit.apply(root, build)
        except (BuildCancelled, KeyboardInterrupt) as e:
            message = f"cancelled: {e}" if str(e) else "cancelled"
            self._record(unit, build, UnitOutcome.FAILED, started_at, start, message)
            raise
        except UnitSkipped as e:
            result = UnitResult(unit.name, UnitOutcome.SKIPPED, message=str(e) or None)
            logger.info("Skipped %s: %s", unit.name, result.message or "nothing to do")
        except Exception as e:
            result = UnitResult(unit.name, UnitOutcome.FAILED, message=str(e), error=e)
            logger.debug("Unit %s raised", unit.name, exc_info=True)
        else:
            result = UnitResult(unit.name, UnitOutcome.APPLIED)
        result.duration = self._record(
            unit, build, result.outcome, started_at, start, result.message
        )
        return result

    def _record(
        self,
        unit: CustomizationUnit,
        build: BuildContext,
        outcome: UnitOutcome,
        started_at: datetime,
        start: float,
        message: str | None,
    ) -> float:
        duration = time.monotonic() - start
        build.manifest.record(
            KIND_UNIT,
            unit.name,
            outcome,
            started_at=started_at,
            duration=duration,
            stage=unit.stage.label,
            policy=unit.policy.value,
            message=message,
        )
        return duration

    def apply_all(
        self,
        build: BuildContext,
        root: Path | None = None,
        stages: Iterable[UnitStage] | None = None,
    ) -> list[UnitResult]:
        """Validate, then apply units in registration order.

        Args:
            build: Build context.
            root: Image root; defaults to the build's image root.
            stages: Restrict to these stages.

        Returns:
            Results in application order.

        Raises:
            OrderingViolation: If validation fails; nothing is applied.
            CustomizationUnitFailure: When a core unit fails. Units after it
                are not applied.
        """
        self.validate()
        wanted = set(stages) if stages is not None else None
        results: list[UnitResult] = []
        for unit in self._units:
            if wanted is not None and unit.stage not in wanted:
                continue
            result = self.apply(unit, build, root)
            results.append(result)
            if result.outcome != UnitOutcome.FAILED:
                continue
            if unit.policy == UnitPolicy.CORE:
                raise CustomizationUnitFailure(
                    f"Core unit {unit.name} failed: {result.message}", unit=unit.name
                ) from result.error
            logger.warning("Deferrable unit %s failed: %s", unit.name, result.message)
        return results

    def describe(self) -> list[dict[str, Any]]:
        """Return a serializable listing of units in order."""
        return [
            {
                "name": u.name,
                "stage": u.stage.label,
                "order": int(u.stage),
                "policy": u.policy.value,
                "writes": list(u.writes),
                "supersedes": list(u.supersedes),
                "description": u.description,
            }
            for u in self._units
        ]


__all__ = [
    "CustomizationUnit",
    "Registry",
    "UnitFn",
    "UnitResult",
    "UnitSkipped",
    "literal_prefix",
    "patterns_overlap",
    "writes_overlap",
]
