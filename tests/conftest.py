"""Shared pytest fixtures and utilities for invoice synthesizer tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from invoice_synth import cli, constants, core_logic, data_manager  # noqa: E402
from invoice_synth.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "OrganizationName = {organization_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Generation]\n"
    "MaxLines = {max_lines}\n{generation_options}\n"
    "[Invoice]\n"
    "StampDutyEnabled = {stamp_duty_enabled}\n"
    "StampDutyAmount = 1.000\n"
)


def make_entry(
    product_id: str,
    price_excl: str,
    rate: str,
    *,
    name: Optional[str] = None,
    max_discount: Optional[str] = None,
    stock: Optional[str] = None,
    unlimited: bool = False,
    backorder: bool = False,
) -> data_manager.CatalogEntry:
    """Build a catalog entry with the inclusive price derived from the rate."""

    unit_price_excl = Decimal(price_excl)
    tax_rate = Decimal(rate)
    return data_manager.CatalogEntry(
        product_id=product_id,
        product_name=name or f"Product {product_id}",
        reference=f"REF-{product_id}",
        unit_price_excl=unit_price_excl,
        unit_price_incl=unit_price_excl * (Decimal("1") + tax_rate / Decimal("100")),
        tax_rate=tax_rate,
        max_discount=Decimal(max_discount) if max_discount is not None else None,
        stock_quantity=Decimal(stock) if stock is not None else None,
        unlimited_stock=unlimited,
        allow_backorder=backorder,
    )


SAMPLE_CATALOG: Sequence[data_manager.CatalogEntry] = (
    make_entry("P-100", "100", "19", name="Desk Lamp", max_discount="0", unlimited=True),
    make_entry("P-200", "12.5", "7", name="Notebook", max_discount="10", stock="40"),
    make_entry("P-300", "8", "13", name="USB Cable", max_discount="5", stock="2", backorder=True),
)


class FirstChoice:
    """Deterministic stand-in for ``random.Random`` that always picks the first item."""

    def __init__(self) -> None:
        self.calls: list[Sequence[Any]] = []

    def choice(self, seq: Sequence[Any]) -> Any:
        self.calls.append(list(seq))
        return seq[0]


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    organization_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates a catalog workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        catalog: Sequence[data_manager.CatalogEntry] = SAMPLE_CATALOG,
        filename: str = "catalog.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, catalog=catalog, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        organization_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        catalog: Sequence[data_manager.CatalogEntry] = SAMPLE_CATALOG,
        max_lines: int = 10,
        stamp_duty_enabled: bool = True,
        generation_options: Mapping[str, str] | None = None,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", catalog=catalog)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                organization_name=organization_name,
                schema_version=schema_version,
                max_lines=max_lines,
                generation_options="".join(f"{key} = {value}\n" for key, value in (generation_options or {}).items()),
                stamp_duty_enabled="true" if stamp_duty_enabled else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            organization_name=organization_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="invoice-synth", description="Invoice synth CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "catalog.xlsx",
        organization_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def entry_factory() -> Callable[..., data_manager.CatalogEntry]:
    """Expose :func:`make_entry` to tests that assemble their own catalogs."""

    return make_entry


@pytest.fixture
def sample_catalog() -> list[data_manager.CatalogEntry]:
    """Return the catalog written into every workbook built by the factories."""

    return list(SAMPLE_CATALOG)


@pytest.fixture
def first_choice_context() -> core_logic.SynthesisContext:
    """Synthesis context whose random source always picks the first candidate."""

    return core_logic.SynthesisContext(rng=FirstChoice())


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
