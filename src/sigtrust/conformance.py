from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from sigtrust.errors import OracleError, SchemaError, UnsupportedVersionError
from sigtrust.evaluator import Evaluator
from sigtrust.models import (
    AnyOf,
    GithubActionAssertion,
    UnsupportedConfig,
    VerificationConfigV1,
    VersionedConfig,
    parse_verification_config,
)
from sigtrust.oracle import Oracle, VerificationResponse
from sigtrust.subject import SubjectUrlPrefix

FIXTURES_DIR = Path("docs/conformance/fixtures")
FIXTURE_DIGEST = f"sha256:{'0' * 64}"


class ConformanceCheck(BaseModel):
    check_id: str
    status: str
    evidence: Dict[str, Any]
    error: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def model_post_init(self, __context: Any) -> None:
        if self.status not in {"pass", "fail"}:
            raise ValueError("status must be pass|fail")


class ConformanceReport(BaseModel):
    schema_: str = Field(alias="schema")
    version: str
    generated_at: str
    overall_status: str
    checks: List[ConformanceCheck]

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def model_post_init(self, __context: Any) -> None:
        if self.overall_status not in {"pass", "fail"}:
            raise ValueError("overall_status must be pass|fail")


class _ScriptedOracle(Oracle):
    """Answers githubAction assertions by owner; ``None`` raises an OracleError."""

    def __init__(self, verdicts: Dict[str, Optional[bool]]) -> None:
        self.verdicts = verdicts
        self.calls: List[str] = []

    def verify(self, assertion: Any, image: str) -> VerificationResponse:
        self.calls.append(assertion.owner)
        verdict = self.verdicts[assertion.owner]
        if verdict is None:
            raise OracleError(f"scripted host failure for {assertion.owner}")
        return VerificationResponse(is_trusted=verdict, digest=FIXTURE_DIGEST)


def _owners(*names: str) -> tuple:
    return tuple(GithubActionAssertion(owner=name) for name in names)


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def _check_fixtures_exist() -> ConformanceCheck:
    expected = {
        "config.valid.json",
        "config.invalid.unknown_field.json",
        "config.unsupported.json",
    }
    present = {p.name for p in FIXTURES_DIR.glob("*.json")}
    missing = sorted(expected - present)
    if missing:
        return ConformanceCheck(
            check_id="fixtures.exist.v1",
            status="fail",
            evidence={"fixtures_dir": str(FIXTURES_DIR), "missing": missing},
            error="missing conformance fixtures",
        )
    return ConformanceCheck(
        check_id="fixtures.exist.v1",
        status="pass",
        evidence={"fixtures_dir": str(FIXTURES_DIR), "count": len(expected)},
    )


def _check_valid_fixture() -> ConformanceCheck:
    path = FIXTURES_DIR / "config.valid.json"
    try:
        parsed = parse_verification_config(path.read_text(encoding="utf-8"))
        if not isinstance(parsed, VersionedConfig):
            raise ValueError(f"expected a supported config, got {type(parsed).__name__}")
    except Exception as exc:
        return ConformanceCheck(
            check_id="config.fixture.valid.v1",
            status="fail",
            evidence={"path": str(path)},
            error=str(exc),
        )
    return ConformanceCheck(
        check_id="config.fixture.valid.v1",
        status="pass",
        evidence={"path": str(path), "api_version": parsed.api_version},
    )


def _check_unknown_field_fixture() -> ConformanceCheck:
    path = FIXTURES_DIR / "config.invalid.unknown_field.json"
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        return ConformanceCheck(
            check_id="config.unknown-field.reject.v1",
            status="fail",
            evidence={"path": str(path)},
            error=str(exc),
        )
    try:
        parse_verification_config(raw)
    except SchemaError as exc:
        return ConformanceCheck(
            check_id="config.unknown-field.reject.v1",
            status="pass",
            evidence={"path": str(path), "fields": exc.fields},
        )
    return ConformanceCheck(
        check_id="config.unknown-field.reject.v1",
        status="fail",
        evidence={"path": str(path)},
        error="config with unknown field was accepted",
    )


def _check_unsupported_fixture() -> ConformanceCheck:
    path = FIXTURES_DIR / "config.unsupported.json"
    oracle = _ScriptedOracle({})
    try:
        parsed = parse_verification_config(path.read_text(encoding="utf-8"))
        if not isinstance(parsed, UnsupportedConfig):
            raise ValueError(f"expected an unsupported config, got {type(parsed).__name__}")
        Evaluator(oracle).evaluate(parsed, "registry.test/app:1")
    except UnsupportedVersionError as exc:
        return ConformanceCheck(
            check_id="config.forward-compat.unsupported.v1",
            status="pass" if not oracle.calls else "fail",
            evidence={"path": str(path), "api_version": exc.api_version},
            error=None if not oracle.calls else "oracle called for unsupported config",
        )
    except Exception as exc:
        return ConformanceCheck(
            check_id="config.forward-compat.unsupported.v1",
            status="fail",
            evidence={"path": str(path)},
            error=str(exc),
        )
    return ConformanceCheck(
        check_id="config.forward-compat.unsupported.v1",
        status="fail",
        evidence={"path": str(path)},
        error="unsupported config was evaluated",
    )


def _check_url_prefix_sanitized() -> ConformanceCheck:
    subject = SubjectUrlPrefix(url_prefix="https://github.com/kubewarden")
    evidence = {
        "url_prefix": subject.url_prefix,
        "lookalike_matches": subject.matches("https://github.com/kubewarden-malicious/x"),
        "member_matches": subject.matches("https://github.com/kubewarden/x"),
    }
    if (
        subject.url_prefix == "https://github.com/kubewarden/"
        and not evidence["lookalike_matches"]
        and evidence["member_matches"]
    ):
        return ConformanceCheck(
            check_id="subject.url-prefix.sanitize.v1", status="pass", evidence=evidence
        )
    return ConformanceCheck(
        check_id="subject.url-prefix.sanitize.v1",
        status="fail",
        evidence=evidence,
        error="url prefix subject was not sanitized",
    )


def _check_all_of_short_circuit() -> ConformanceCheck:
    oracle = _ScriptedOracle({"a": False, "b": True, "c": True})
    config = VerificationConfigV1(all_of=_owners("a", "b", "c"))
    result = Evaluator(oracle).evaluate(config, "registry.test/app:1")
    evidence = {"calls": oracle.calls, "trusted": result.trusted}
    if oracle.calls == ["a"] and not result.trusted:
        return ConformanceCheck(
            check_id="evaluator.all-of.short-circuit.v1", status="pass", evidence=evidence
        )
    return ConformanceCheck(
        check_id="evaluator.all-of.short-circuit.v1",
        status="fail",
        evidence=evidence,
        error="allOf kept calling the oracle after a negative verdict",
    )


def _check_any_of_threshold() -> ConformanceCheck:
    reached = _ScriptedOracle({"a": True, "b": False, "c": True, "d": True})
    reached_result = Evaluator(reached).evaluate(
        VerificationConfigV1(
            any_of=AnyOf(minimum_matches=2, signatures=_owners("a", "b", "c", "d"))
        ),
        "registry.test/app:1",
    )
    unreachable = _ScriptedOracle({"a": False, "b": False, "c": True})
    unreachable_result = Evaluator(unreachable).evaluate(
        VerificationConfigV1(any_of=AnyOf(minimum_matches=2, signatures=_owners("a", "b", "c"))),
        "registry.test/app:1",
    )
    evidence = {
        "reached_calls": reached.calls,
        "unreachable_calls": unreachable.calls,
    }
    if (
        reached_result.trusted
        and reached.calls == ["a", "b", "c"]
        and not unreachable_result.trusted
        and unreachable.calls == ["a", "b"]
    ):
        return ConformanceCheck(
            check_id="evaluator.any-of.threshold.v1", status="pass", evidence=evidence
        )
    return ConformanceCheck(
        check_id="evaluator.any-of.threshold.v1",
        status="fail",
        evidence=evidence,
        error="anyOf did not stop as soon as the threshold was decided",
    )


def _check_oracle_error_precedence() -> ConformanceCheck:
    oracle = _ScriptedOracle({"a": True, "b": None, "c": True})
    config = VerificationConfigV1(all_of=_owners("a", "b", "c"))
    try:
        result = Evaluator(oracle).evaluate(config, "registry.test/app:1")
    except OracleError:
        return ConformanceCheck(
            check_id="evaluator.oracle-error.precedence.v1",
            status="pass",
            evidence={"calls": oracle.calls},
        )
    return ConformanceCheck(
        check_id="evaluator.oracle-error.precedence.v1",
        status="fail",
        evidence={"calls": oracle.calls, "trusted": result.trusted},
        error="oracle failure was reported as a verdict",
    )


def run_conformance_checks() -> ConformanceReport:
    checks = [
        _check_fixtures_exist(),
        _check_valid_fixture(),
        _check_unknown_field_fixture(),
        _check_unsupported_fixture(),
        _check_url_prefix_sanitized(),
        _check_all_of_short_circuit(),
        _check_any_of_threshold(),
        _check_oracle_error_precedence(),
    ]
    overall_status = "pass" if all(c.status == "pass" for c in checks) else "fail"
    return ConformanceReport(
        schema="sigtrust.conformance-report/v1",
        version="0.1",
        generated_at=_now_iso(),
        overall_status=overall_status,
        checks=checks,
    )
