"""Configuration loading for pytest-testwise.

This module reads configuration from pyproject.toml [tool.pytest-testwise]
section and provides sensible defaults when configuration is absent.

Example pyproject.toml section:
    [tool.pytest-testwise]
    include = ["shop", "shop.*"]
    exclude = ["shop.migrations.*"]
    report = "build/testwise.json"
    selection_url = "https://tia.example.com/api/projects/shop"
    partition = "unit-tests"
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import tomllib
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from pathlib import Path


DEFAULT_REPORT = 'testwise-coverage.json'
DEFAULT_SELECTION_TIMEOUT = 30.0


@dataclass
class TestwiseConfig:
    """Configuration for pytest-testwise.

    Optional fields default to None, meaning the feature is off or the
    built-in default applies.

    Attributes:
        include: Module name patterns to instrument.
        exclude: Module name patterns never to instrument.
        report: Path of the JSON report written at session end.
        selection_url: Base URL of the test-selection service.
        upload_url: Endpoint receiving the report.
        partition: Partition the coverage belongs to.
        port: Port of the control server. None disables the server, 0 picks
            a free port.
        include_non_impacted: Only prioritize, never deselect tests.
        selection_timeout: Timeout of one selection request in seconds.
    """

    __test__ = False

    include: list[str] | None = None
    exclude: list[str] | None = None
    report: str = DEFAULT_REPORT
    selection_url: str | None = None
    upload_url: str | None = None
    partition: str | None = None
    port: int | None = None
    include_non_impacted: bool = False
    selection_timeout: float = DEFAULT_SELECTION_TIMEOUT


def load_config(rootdir: Path) -> TestwiseConfig:
    """Load configuration from pyproject.toml.

    Reads the [tool.pytest-testwise] section from pyproject.toml in the
    given directory. Returns default configuration if the file or section
    does not exist.

    Args:
        rootdir: Directory containing pyproject.toml.

    Returns:
        TestwiseConfig with values from pyproject.toml or defaults.
    """
    pyproject_path = rootdir / 'pyproject.toml'

    if not pyproject_path.exists():
        return TestwiseConfig()

    with pyproject_path.open('rb') as f:
        data = tomllib.load(f)

    tool_config = data.get('tool', {}).get('pytest-testwise', {})
    port = tool_config.get('port')

    return TestwiseConfig(
        include=tool_config.get('include'),
        exclude=tool_config.get('exclude'),
        report=tool_config.get('report', DEFAULT_REPORT),
        selection_url=tool_config.get('selection_url'),
        upload_url=tool_config.get('upload_url'),
        partition=tool_config.get('partition'),
        port=int(port) if port is not None else None,
        include_non_impacted=bool(tool_config.get('include_non_impacted', False)),
        selection_timeout=float(tool_config.get('selection_timeout', DEFAULT_SELECTION_TIMEOUT)),
    )


def _split(value: str | None) -> list[str] | None:
    if value and value.strip():
        return [item.strip() for item in value.split(',') if item.strip()]
    return None


def _text(value: str | None) -> str | None:
    if value and value.strip():
        return value.strip()
    return None


def merge_configs(
    file_config: TestwiseConfig,
    cli_include: str | None = None,
    cli_exclude: str | None = None,
    cli_report: str | None = None,
    cli_selection_url: str | None = None,
    cli_upload_url: str | None = None,
    cli_partition: str | None = None,
    cli_port: int | None = None,
) -> TestwiseConfig:
    """Merge CLI arguments with file configuration.

    CLI arguments take precedence over pyproject.toml configuration.
    Empty strings are treated as not provided.

    Args:
        file_config: Configuration loaded from pyproject.toml.
        cli_include: Comma-separated include patterns (--testwise-include).
        cli_exclude: Comma-separated exclude patterns (--testwise-exclude).
        cli_report: Report path (--testwise-report).
        cli_selection_url: Selection service URL (--testwise-selection-url).
        cli_upload_url: Upload endpoint (--testwise-upload-url).
        cli_partition: Partition (--testwise-partition).
        cli_port: Control server port (--testwise-port).

    Returns:
        TestwiseConfig with CLI values overriding file config where provided.
    """
    overrides: dict[str, object] = {}
    if (include := _split(cli_include)) is not None:
        overrides['include'] = include
    if (exclude := _split(cli_exclude)) is not None:
        overrides['exclude'] = exclude
    if (report := _text(cli_report)) is not None:
        overrides['report'] = report
    if (selection_url := _text(cli_selection_url)) is not None:
        overrides['selection_url'] = selection_url
    if (upload_url := _text(cli_upload_url)) is not None:
        overrides['upload_url'] = upload_url
    if (partition := _text(cli_partition)) is not None:
        overrides['partition'] = partition
    if cli_port is not None:
        overrides['port'] = cli_port
    return replace(file_config, **overrides)
