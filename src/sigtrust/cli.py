import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from sigtrust import __version__
from sigtrust.conformance import run_conformance_checks
from sigtrust.errors import UnsupportedVersionError
from sigtrust.evaluator import Evaluator
from sigtrust.models import (
    LATEST_API_VERSION,
    UnsupportedConfig,
    dump_verification_config,
    parse_verification_config,
)
from sigtrust.oracle import HostOracle, HttpTransport, ReplayTransport
from sigtrust.settings import (
    DEFAULT_CONFIG_KEY,
    HostSettings,
    extract_verification_config,
    load_settings_document,
    validate_settings,
)

app = typer.Typer(name="sigtrust", help="Signature trust policy validation and evaluation")
console = Console()
err_console = Console(stderr=True)

TEMPLATE: Dict[str, Any] = {
    "apiVersion": LATEST_API_VERSION,
    "allOf": [
        {
            "kind": "githubAction",
            "owner": "kubewarden",
            "repo": "policy-server",
        }
    ],
    "anyOf": {
        "minimumMatches": 1,
        "signatures": [
            {
                "kind": "genericIssuer",
                "issuer": "https://token.actions.githubusercontent.com",
                "subject": {"urlPrefix": "https://github.com/kubewarden/"},
            },
            {
                "kind": "genericIssuer",
                "issuer": "https://accounts.google.com",
                "subject": {"equal": "release@kubewarden.io"},
                "annotations": {"env": "prod"},
            },
        ],
    },
}


def _emit(payload: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(payload, sort_keys=True))
        return
    console.print_json(data=payload)


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _build_oracle(
    host_url: Optional[str],
    timeout: Optional[float],
    allow_insecure: bool,
    verdicts: Optional[str],
) -> HostOracle:
    if verdicts:
        return HostOracle(ReplayTransport.from_file(verdicts))
    settings = HostSettings()
    url = host_url or settings.host_url
    if not url:
        raise ValueError(
            "no verification host: pass --host-url, --verdicts or set SIGTRUST_HOST_URL"
        )
    return HostOracle(
        HttpTransport(
            url,
            timeout=timeout if timeout is not None else settings.timeout_seconds,
            allow_insecure=allow_insecure or settings.allow_insecure,
        )
    )


@app.command()
def validate(
    settings: str = typer.Argument(..., help="Path to policy settings (YAML or JSON)"),
    key: str = typer.Option(
        DEFAULT_CONFIG_KEY, help="Settings key holding the verification config"
    ),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Validate the verification config embedded in a settings document."""
    try:
        document = load_settings_document(settings)
        response = validate_settings(document, key)
        payload: Dict[str, Any] = {"ok": response.valid, "valid": response.valid}
        if response.message:
            payload["message"] = response.message
        _emit(payload, json_output)
        if not response.valid:
            raise typer.Exit(code=1)
    except typer.Exit:
        raise
    except Exception as e:
        _emit({"ok": False, "error": str(e), "command": "validate"}, json_output)
        raise typer.Exit(code=1)


@app.command()
def evaluate(
    image: str = typer.Argument(..., help="Image reference to evaluate"),
    settings: str = typer.Option(..., help="Path to policy settings (YAML or JSON)"),
    key: str = typer.Option(
        DEFAULT_CONFIG_KEY, help="Settings key holding the verification config"
    ),
    host_url: Optional[str] = typer.Option(None, help="Verification host base URL"),
    timeout: Optional[float] = typer.Option(None, help="Host call timeout in seconds"),
    allow_insecure: bool = typer.Option(False, help="Allow an http:// verification host"),
    verdicts: Optional[str] = typer.Option(
        None, help="Answer host calls from a recorded verdicts JSON file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every host call"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Evaluate a verification config against an image."""
    _configure_logging(verbose)
    try:
        document = load_settings_document(settings)
        parsed = parse_verification_config(extract_verification_config(document, key))
        if isinstance(parsed, UnsupportedConfig):
            raise UnsupportedVersionError(parsed.api_version, LATEST_API_VERSION)
        oracle = _build_oracle(host_url, timeout, allow_insecure, verdicts)
        result = Evaluator(oracle).evaluate(parsed, image)
        payload = {
            "ok": result.trusted,
            "image": image,
            "trusted": result.trusted,
            "digest": result.digest,
            "calls": [
                {
                    "group": o.group,
                    "index": o.index,
                    "assertion": o.label,
                    "trusted": o.trusted,
                    "digest": o.digest,
                }
                for o in result.outcomes
            ],
        }
        _emit(payload, json_output)
        if not result.trusted:
            raise typer.Exit(code=1)
    except typer.Exit:
        raise
    except UnsupportedVersionError as e:
        _emit(
            {
                "ok": False,
                "error": str(e),
                "command": "evaluate",
                "api_version": e.api_version,
                "supported_api_version": e.supported,
            },
            json_output,
        )
        raise typer.Exit(code=1)
    except Exception as e:
        _emit({"ok": False, "error": str(e), "command": "evaluate"}, json_output)
        raise typer.Exit(code=1)


@app.command()
def template(
    output: Optional[str] = typer.Option(None, help="Optional output path for the template"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Print an example verification config for the current schema."""
    try:
        payload = dump_verification_config(parse_verification_config(TEMPLATE))
        if output:
            out_path = Path(output)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(
                json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )
        _emit(payload, json_output)
    except Exception as e:
        _emit({"ok": False, "error": str(e), "command": "template"}, json_output)
        raise typer.Exit(code=1)


@app.command()
def version(
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Print version information."""
    _emit(
        {"ok": True, "version": __version__, "api_version": LATEST_API_VERSION},
        json_output,
    )


@app.command()
def conformance(
    output: Optional[str] = typer.Option(
        None, help="Optional output path for conformance report JSON"
    ),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Run policy-model conformance checks and emit a machine-readable report."""
    try:
        report = run_conformance_checks()
        payload = report.model_dump(by_alias=True)
        if output:
            out_path = Path(output)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(
                json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )
            payload["output_path"] = str(out_path)
        payload["ok"] = report.overall_status == "pass"
        _emit(payload, json_output)
        if report.overall_status != "pass":
            raise typer.Exit(code=1)
    except typer.Exit:
        raise
    except Exception as e:
        _emit({"ok": False, "error": str(e), "command": "conformance"}, json_output)
        raise typer.Exit(code=1) from e


if __name__ == "__main__":
    app()
