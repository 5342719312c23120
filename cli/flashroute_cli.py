"""FlashRoute CLI for validating requests and dry-running arbitrage scenarios."""

from __future__ import annotations

import json
import sys
import time
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping

import click
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from application.settings import EngineSettings, RiskSettings
from application.system import bootstrap_observability, build_system
from domain.arbitrage import ArbitrageRequest, BatchPolicy, BatchResult
from execution.adapters.simulated import (
    InMemoryFlashLoanProvider,
    SimulatedExchangeAdapter,
    StaticChainState,
)
from execution.errors import ArbitrageError

CLI_SUBJECT = "cli"


class CLIError(click.ClickException):
    """Base class for typed CLI failures with deterministic exit codes."""

    exit_code = 1


class ConfigError(CLIError):
    exit_code = 2


class ValidationFailed(CLIError):
    exit_code = 3


class ExecutionError(CLIError):
    exit_code = 4


@contextmanager
def step_logger(command: str, name: str) -> Iterator[None]:
    """Context manager emitting deterministic start/stop step logs."""

    click.echo(f"[{command}] ▶ {name}", err=True)
    start = time.perf_counter()
    try:
        yield
    except Exception:
        duration = time.perf_counter() - start
        click.echo(f"[{command}] ✖ {name} ({duration:.2f}s)", err=True)
        raise
    else:
        duration = time.perf_counter() - start
        click.echo(f"[{command}] ✓ {name} ({duration:.2f}s)", err=True)


class RateConfig(BaseModel):
    token_in: str = Field(..., min_length=1)
    token_out: str = Field(..., min_length=1)
    rate: Decimal = Field(..., ge=0)


class VenueConfig(BaseModel):
    fee_bps: int = Field(0, ge=0, lt=10_000)
    gas_per_swap: int = Field(120_000, ge=0)
    rates: List[RateConfig] = Field(default_factory=list)

    def build(self) -> SimulatedExchangeAdapter:
        return SimulatedExchangeAdapter(
            {(rate.token_in, rate.token_out): rate.rate for rate in self.rates},
            fee_bps=self.fee_bps,
            gas_per_swap=self.gas_per_swap,
        )


class LenderConfig(BaseModel):
    name: str = Field("lender", min_length=1)
    fee_bps: Decimal = Field(Decimal("9"), ge=0, lt=10_000)
    liquidity: Dict[str, Decimal] | None = None


class ChainConfig(BaseModel):
    gas_price_gwei: Decimal = Field(Decimal("30"), ge=0)
    block_number: int = Field(0, ge=0)

    @property
    def gas_price_wei(self) -> int:
        return int(self.gas_price_gwei * 10**9)


class ScenarioConfig(BaseModel):
    """Dry-run scenario: simulated venues, a lender and a batch of requests."""

    lender: LenderConfig = Field(default_factory=LenderConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    venues: Dict[str, VenueConfig] = Field(..., min_length=1)
    requests: List[Dict[str, Any]] = Field(..., min_length=1)
    policy: BatchPolicy = BatchPolicy.FAIL_SOFT

    model_config = ConfigDict(extra="forbid")


def _load_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path} is not valid YAML: {exc}") from exc


def _request_payloads(document: Any) -> List[Mapping[str, Any]]:
    if isinstance(document, Mapping) and "requests" in document:
        entries = document["requests"]
    elif isinstance(document, list):
        entries = document
    else:
        entries = [document]
    if not entries or not all(isinstance(entry, Mapping) for entry in entries):
        raise ConfigError("Expected a request mapping or a list of request mappings")
    return list(entries)


def _parse_request(payload: Mapping[str, Any]) -> ArbitrageRequest:
    try:
        return ArbitrageRequest.from_mapping(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"Malformed request: {exc}") from exc


def _emit_batch(result: BatchResult, output_format: str) -> None:
    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return
    click.echo("request_id | status | profit | gas_used | error")
    click.echo("---------- | ------ | ------ | -------- | -----")
    for entry in result.results:
        state = "ok" if entry.success else ("skipped" if entry.skipped else "failed")
        click.echo(
            f"{entry.request_id} | {state} | {entry.profit} | {entry.gas_used} | {entry.error or ''}"
        )
    click.echo(
        f"succeeded={result.succeeded} failed={result.failed} skipped={result.skipped} "
        f"total_profit={result.total_profit}"
    )


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Overrides FLASHROUTE_LOG_LEVEL.",
)
@click.option("--plain-logs", is_flag=True, help="Emit plain text log lines instead of JSON.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, plain_logs: bool) -> None:
    """FlashRoute flash-loan arbitrage tooling.

    Settings are read from ``FLASHROUTE_*`` environment variables; the flags
    above take precedence.
    """

    try:
        settings = EngineSettings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid FLASHROUTE_* environment: {exc}") from exc
    overrides: Dict[str, Any] = {}
    if log_level is not None:
        overrides["log_level"] = log_level.upper()
    if plain_logs:
        overrides["log_json"] = False
    if overrides:
        settings = settings.model_copy(update=overrides)
    bootstrap_observability(settings, stream=sys.stderr)
    ctx.obj = settings


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(request_file: Path) -> None:
    """Check that every request in REQUEST_FILE is structurally sound."""

    command = "validate"
    with step_logger(command, "load requests"):
        payloads = _request_payloads(_load_yaml(request_file))
    problems: List[str] = []
    for index, payload in enumerate(payloads):
        try:
            request = _parse_request(payload)
        except ValidationFailed as exc:
            problems.append(f"request {index}: {exc.message}")
            continue
        for violation in request.structural_violations():
            problems.append(f"request {index} ({request.request_id}): {violation}")
    if problems:
        for problem in problems:
            click.echo(f"[{command}] ✖ {problem}", err=True)
        raise ValidationFailed(f"{len(problems)} problem(s) found in {request_file}")
    click.echo(f"[{command}] completed requests={len(payloads)} valid")


@cli.command()
@click.argument("scenario_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--audit-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("observability/audit/flashroute-simulate.jsonl"),
    show_default=True,
    help="Where the dry run writes its audit trail.",
)
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
@click.option("--strict", is_flag=True, help="Exit non-zero when any request fails.")
@click.pass_obj
def simulate(
    base_settings: EngineSettings,
    scenario_file: Path,
    audit_path: Path,
    output_format: str,
    strict: bool,
) -> None:
    """Dry-run the requests in SCENARIO_FILE against simulated venues."""

    command = "simulate"
    with step_logger(command, "load scenario"):
        document = _load_yaml(scenario_file)
        if not isinstance(document, Mapping):
            raise ConfigError("Scenario must be a mapping")
        try:
            scenario = ScenarioConfig.model_validate(document)
        except ValidationError as exc:
            raise ConfigError(f"Invalid scenario: {exc}") from exc
        requests = [_parse_request(payload) for payload in scenario.requests]
    with step_logger(command, "build engine"):
        settings = base_settings.model_copy(
            update={
                "risk": scenario.risk,
                "audit_path": audit_path,
                "admin_subjects": [CLI_SUBJECT],
                "access_policy_path": None,
            }
        )
        system = build_system(
            settings,
            provider=InMemoryFlashLoanProvider(
                scenario.lender.name,
                fee_bps=scenario.lender.fee_bps,
                liquidity=scenario.lender.liquidity,
            ),
            chain_state=StaticChainState(
                scenario.chain.gas_price_wei, scenario.chain.block_number
            ),
            venues={name: venue.build() for name, venue in scenario.venues.items()},
        )
    with step_logger(command, "execute batch"):
        try:
            result = system.execute_batch_arbitrage(
                CLI_SUBJECT, requests, policy=scenario.policy
            )
        except (ArbitrageError, TypeError, ValueError) as exc:
            raise ExecutionError(str(exc)) from exc
    _emit_batch(result, output_format)
    if strict and (result.failed or result.skipped):
        raise ExecutionError(f"{result.failed} failed, {result.skipped} skipped")


def main() -> None:  # pragma: no cover - console entry point
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
