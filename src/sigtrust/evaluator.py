"""Local AllOf / AnyOf combinator over per-assertion oracle verdicts.

Assertions are evaluated strictly in declaration order, one oracle call at a time,
and both groups stop issuing calls as soon as their outcome is decided. Oracle calls
are assumed to be expensive (registry and transparency-log lookups on the host), so
a call whose answer cannot change the outcome is never made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from sigtrust.errors import OracleError, SchemaError, UnsupportedVersionError
from sigtrust.models import (
    LATEST_API_VERSION,
    AnyOf,
    InvalidConfig,
    LatestVerificationConfig,
    UnsupportedConfig,
    VersionedConfig,
    assertion_label,
)
from sigtrust.oracle import HostOracle, Oracle
from sigtrust.settings import HostSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssertionOutcome:
    group: str
    index: int
    label: str
    trusted: bool
    digest: str


@dataclass
class EvaluationResult:
    trusted: bool
    digest: Optional[str] = None
    outcomes: List[AssertionOutcome] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return len(self.outcomes)


class _Run:
    """State of one evaluation; discarded when ``evaluate`` returns."""

    def __init__(self, oracle: Oracle, image: str) -> None:
        self.oracle = oracle
        self.image = image
        self.digest: Optional[str] = None
        self.outcomes: List[AssertionOutcome] = []

    def check(self, group: str, index: int, assertion: Any) -> bool:
        label = assertion_label(assertion)
        logger.debug("verifying %s[%d] %s for %s", group, index, label, self.image)
        try:
            response = self.oracle.verify(assertion, self.image)
        except OracleError:
            logger.warning(
                "oracle failed on %s[%d] %s; aborting evaluation", group, index, label
            )
            raise
        self.outcomes.append(
            AssertionOutcome(
                group=group,
                index=index,
                label=label,
                trusted=response.is_trusted,
                digest=response.digest,
            )
        )
        if response.is_trusted:
            self.digest = response.digest
        return response.is_trusted

    def all_of(self, assertions: Sequence[Any]) -> bool:
        for index, assertion in enumerate(assertions):
            if not self.check("allOf", index, assertion):
                skipped = len(assertions) - index - 1
                logger.info("allOf not satisfied at index %d; skipping %d", index, skipped)
                return False
        return True

    def any_of(self, group: AnyOf) -> bool:
        signatures = group.signatures
        needed = group.minimum_matches
        matched = 0
        for index, assertion in enumerate(signatures):
            remaining = len(signatures) - index
            if remaining < needed - matched:
                logger.info(
                    "anyOf threshold %d unreachable with %d matched and %d left",
                    needed,
                    matched,
                    remaining,
                )
                return False
            if self.check("anyOf", index, assertion):
                matched += 1
                if matched >= needed:
                    logger.info("anyOf threshold %d reached at index %d", needed, index)
                    return True
        return matched >= needed


class Evaluator:
    def __init__(self, oracle: Oracle) -> None:
        self.oracle = oracle

    def evaluate(self, config: Any, image: str) -> EvaluationResult:
        body = resolve_config(config)
        run = _Run(self.oracle, image)
        if body.is_empty():
            logger.warning("verification config declares neither allOf nor anyOf; accepting")
            return EvaluationResult(trusted=True)

        trusted = True
        if body.all_of is not None:
            trusted = run.all_of(body.all_of)
        if trusted and body.any_of is not None:
            trusted = run.any_of(body.any_of)
        return EvaluationResult(trusted=trusted, digest=run.digest, outcomes=run.outcomes)


def resolve_config(config: Any) -> LatestVerificationConfig:
    """Reject configs that must never reach the oracle; return the schema body."""
    if isinstance(config, UnsupportedConfig):
        raise UnsupportedVersionError(config.api_version, LATEST_API_VERSION)
    if isinstance(config, InvalidConfig):
        raise SchemaError(config.error, config.errors)
    if isinstance(config, VersionedConfig):
        return config.config
    if isinstance(config, LatestVerificationConfig):
        return config
    raise TypeError(f"cannot evaluate {type(config).__name__}")


def verify_image(image: str, config: Any, oracle: Optional[Oracle] = None) -> bool:
    resolve_config(config)
    if oracle is None:
        oracle = HostOracle.from_settings(HostSettings())
    return Evaluator(oracle).evaluate(config, image).trusted
