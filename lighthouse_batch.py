# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "fastapi",
#   "uvicorn",
# ]
# ///
"""Lighthouse Batch Audit CLI Tool.

Runs Lighthouse across a list of pages, stores the raw per-page reports in a
job directory, reduces them into per-domain metric statistics, and serves
those statistics through a small browser viewer.
"""

from __future__ import annotations

import argparse
import copy
import html
import json
import os
import shutil
import subprocess
import sys
import tempfile
import time
import tomllib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

import pandas as pd
import requests
import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_BACKENDS = ("cli", "psi")
VALID_FORM_FACTORS = ("desktop", "mobile")
VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
VALID_OUTPUT_FORMATS = ("html", "json")
VALID_LOG_LEVELS = ("silent", "error", "info", "verbose")
VALID_AGGREGATIONS = ("running", "mean")

DEFAULT_INPUT_FILE = "./input.csv"
DEFAULT_OUTPUT_DIR = "./output"
DEFAULT_BACKEND = "cli"
DEFAULT_AGGREGATION = "running"
DEFAULT_VIEWER_HOST = "127.0.0.1"
DEFAULT_VIEWER_PORT = 8000

STATS_FILENAME = "auditStats.json"
PAGES_CSV_FILENAME = "pages.csv"

# Audits reduced into auditStats.json unless overridden by --metrics / config.
DEFAULT_METRICS = [
    "first-contentful-paint",
    "largest-contentful-paint",
    "cumulative-layout-shift",
    "speed-index",
    "total-blocking-time",
    "interactive",
]

DEFAULT_AUDIT_OPTIONS = {
    "backend": DEFAULT_BACKEND,
    "form_factor": "desktop",
    "screen_emulation": {
        "mobile": False,
        "width": 1440,
        "height": 900,
        "device_scale_factor": 1,
        "disabled": False,
    },
    "log_level": "info",
    "output": ["html", "json"],
    "only_categories": list(VALID_CATEGORIES),
    "port": None,
    "api_key": None,
    "lighthouse_bin": "lighthouse",
    "chrome_flags": ["--headless"],
}

UNITLESS = "unitless"
UNITLESS_PRECISION = 3
DEFAULT_PRECISION = 0

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}
PSI_TIMEOUT = 120
CLI_TIMEOUT = 300

CONFIG_FILENAMES = ["lighthouse-batch.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-batch",
]

# Viewer indicator thresholds on the 0-1 score scale.
SCORE_POOR = 0.33
SCORE_AVERAGE = 0.66


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AuditError(Exception):
    """Raised when a single page audit produces no result."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


def _as_number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


@dataclass
class AuditEntry:
    """One Lighthouse audit reduced to the fields the aggregation reads."""

    numeric_value: float | None = None
    numeric_unit: str | None = None
    score: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> AuditEntry:
        return cls(
            numeric_value=_as_number(data.get("numericValue")),
            numeric_unit=data.get("numericUnit"),
            score=_as_number(data.get("score")),
        )


@dataclass
class AuditResult:
    resolved_url: str | None
    audits: dict[str, AuditEntry] = field(default_factory=dict)
    category_scores: dict[str, float | None] = field(default_factory=dict)

    @classmethod
    def from_lhr(cls, lhr: dict) -> AuditResult:
        """Build from a Lighthouse result (LHR) document."""
        resolved_url = lhr.get("finalDisplayedUrl") or lhr.get("finalUrl") or lhr.get("mainDocumentUrl")
        audits = {
            audit_id: AuditEntry.from_dict(audit_data)
            for audit_id, audit_data in (lhr.get("audits") or {}).items()
            if isinstance(audit_data, dict)
        }
        category_scores = {
            category_id: _as_number(category_data.get("score"))
            for category_id, category_data in (lhr.get("categories") or {}).items()
            if isinstance(category_data, dict)
        }
        return cls(resolved_url=resolved_url, audits=audits, category_scores=category_scores)


@dataclass
class AuditRun:
    """Raw output of one runner invocation: the LHR plus rendered reports by format."""

    lhr: dict
    reports: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def precision_for_unit(unit: str | None) -> int:
    return UNITLESS_PRECISION if unit == UNITLESS else DEFAULT_PRECISION


def round_half_up(value: float, precision: int) -> float | int:
    """Round half away from zero; integer precision yields an int."""
    quantum = Decimal(1).scaleb(-precision)
    rounded = Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    if precision == 0:
        return int(rounded)
    return float(rounded)


@dataclass
class DomainMetricSummary:
    min: float | None = None
    max: float | None = None
    avg: float | None = None
    unit: str | None = None
    score: float | None = None

    def add(self, value: float, unit: str | None, score: float | None) -> None:
        """Fold one page's value into the summary.

        The average is a running pairwise average, (previous + value) / 2,
        so later contributions weigh more than earlier ones. Values are
        re-rounded after every update.
        """
        self.unit = unit
        precision = precision_for_unit(unit)
        self.min = round_half_up(value if self.min is None else min(self.min, value), precision)
        self.max = round_half_up(value if self.max is None else max(self.max, value), precision)
        self.avg = round_half_up(value if self.avg is None else (self.avg + value) / 2, precision)
        if score is not None:
            self.score = score if self.score is None else (self.score + score) / 2

    def to_dict(self) -> dict:
        return {
            "min": self.min,
            "max": self.max,
            "avg": self.avg,
            "unit": self.unit,
            "score": self.score,
        }


def extract_domain(url: str | None) -> str | None:
    """Return the authority segment of an absolute URL (between the 2nd and 3rd '/')."""
    if not url:
        return None
    parts = url.split("/")
    if len(parts) < 3 or not parts[2]:
        return None
    return parts[2]


def _summary_cell(stats: dict, domain: str, metric: str) -> DomainMetricSummary:
    domain_stats = stats.setdefault(domain, {})
    if metric not in domain_stats:
        domain_stats[metric] = DomainMetricSummary()
    return domain_stats[metric]


def _qualifying_entries(results, metrics_to_analyze) -> Iterator[tuple[str, str, AuditEntry]]:
    allowed = list(dict.fromkeys(metrics_to_analyze))
    for result in results:
        domain = extract_domain(result.resolved_url)
        if domain is None:
            continue
        for metric in allowed:
            entry = result.audits.get(metric)
            if entry is None or entry.numeric_value is None:
                continue
            yield domain, metric, entry


def aggregate(
    results: list[AuditResult],
    metrics_to_analyze: list[str],
    mode: str = DEFAULT_AGGREGATION,
) -> dict[str, dict[str, DomainMetricSummary]]:
    """Reduce per-page results into {domain: {metric: DomainMetricSummary}}.

    mode="running" (default) keeps the running pairwise average; mode="mean"
    computes true arithmetic means rounded once at the end.
    """
    if mode == "mean":
        return _aggregate_mean(results, metrics_to_analyze)
    if mode != "running":
        raise ValueError(f"unknown aggregation mode: {mode!r}")

    stats: dict[str, dict[str, DomainMetricSummary]] = {}
    for domain, metric, entry in _qualifying_entries(results, metrics_to_analyze):
        summary = _summary_cell(stats, domain, metric)
        summary.add(entry.numeric_value, entry.numeric_unit, entry.score)
    return stats


def _aggregate_mean(results, metrics_to_analyze) -> dict[str, dict[str, DomainMetricSummary]]:
    rows = [
        {
            "domain": domain,
            "metric": metric,
            "value": entry.numeric_value,
            "unit": entry.numeric_unit,
            "score": entry.score,
        }
        for domain, metric, entry in _qualifying_entries(results, metrics_to_analyze)
    ]
    if not rows:
        return {}

    stats: dict[str, dict[str, DomainMetricSummary]] = {}
    frame = pd.DataFrame(rows)
    for (domain, metric), group in frame.groupby(["domain", "metric"], sort=False):
        unit = group["unit"].iloc[-1]
        precision = precision_for_unit(unit)
        values = group["value"].astype(float)
        scores = pd.to_numeric(group["score"], errors="coerce").dropna()
        stats.setdefault(domain, {})[metric] = DomainMetricSummary(
            min=round_half_up(values.min(), precision),
            max=round_half_up(values.max(), precision),
            avg=round_half_up(values.mean(), precision),
            unit=unit,
            score=float(scores.mean()) if len(scores) > 0 else None,
        )
    return stats


def stats_to_dict(stats: dict[str, dict[str, DomainMetricSummary]]) -> dict:
    return {
        domain: {metric: summary.to_dict() for metric, summary in metrics.items()}
        for domain, metrics in stats.items()
    }


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "backend": "backend",
        "api_key": "api_key",
        "input_file": "input_file",
        "output_dir": "output_dir",
        "form_factor": "form_factor",
        "width": "width",
        "height": "height",
        "device_scale_factor": "device_scale_factor",
        "categories": "categories",
        "output_formats": "output_formats",
        "port": "browser_port",
        "log_level": "log_level",
        "metrics": "metrics",
        "aggregation": "aggregation",
        "lighthouse_bin": "lighthouse_bin",
        "chrome_flags": "chrome_flags",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


def merge_audit_options(overrides: dict | None = None) -> dict:
    """Return DEFAULT_AUDIT_OPTIONS with caller overrides applied.

    Caller fields win; None means "not supplied" and keeps the default.
    screen_emulation is merged key by key.
    """
    merged = copy.deepcopy(DEFAULT_AUDIT_OPTIONS)
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "screen_emulation":
            merged["screen_emulation"].update({k: v for k, v in value.items() if v is not None})
        else:
            merged[key] = value
    return merged


def build_audit_options(args: argparse.Namespace) -> dict:
    """Translate parsed CLI/config values into merged audit options."""
    form_factor = getattr(args, "form_factor", None)
    screen_emulation = {
        "width": getattr(args, "width", None),
        "height": getattr(args, "height", None),
        "device_scale_factor": getattr(args, "device_scale_factor", None),
    }
    # Lighthouse rejects a form factor that disagrees with the emulated device.
    if form_factor:
        screen_emulation["mobile"] = form_factor == "mobile"

    overrides = {
        "backend": getattr(args, "backend", None),
        "form_factor": form_factor,
        "screen_emulation": screen_emulation,
        "log_level": getattr(args, "log_level", None),
        "output": getattr(args, "output_formats", None),
        "only_categories": getattr(args, "categories", None),
        "port": getattr(args, "browser_port", None),
        "api_key": getattr(args, "api_key", None),
        "lighthouse_bin": getattr(args, "lighthouse_bin", None),
        "chrome_flags": getattr(args, "chrome_flags", None),
    }
    return merge_audit_options(overrides)


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-batch",
        description="Lighthouse Batch Audit CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- audit ---
    audit_parser = subparsers.add_parser("audit", help="Audit every page in an input list and write a job")
    audit_parser.add_argument("input_file", nargs="?", default=None, help=f"File of 'name,url' lines (prompted if omitted, default {DEFAULT_INPUT_FILE})")
    audit_parser.add_argument("--job-id", dest="job_id", action=TrackingAction, default=None, help="Job identifier (default: today's date, yyyy-mm-dd)")
    audit_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Root directory for job output")
    audit_parser.add_argument("--backend", dest="backend", action=TrackingAction, default=DEFAULT_BACKEND, choices=VALID_BACKENDS, help="Audit engine: local lighthouse CLI or PageSpeed Insights API")
    audit_parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="PageSpeed Insights API key (or set PAGESPEED_API_KEY env var)")
    audit_parser.add_argument("--form-factor", dest="form_factor", action=TrackingAction, default=None, choices=VALID_FORM_FACTORS, help="Device form factor (default: desktop)")
    audit_parser.add_argument("--width", dest="width", action=TrackingAction, type=int, default=None, help="Emulated screen width")
    audit_parser.add_argument("--height", dest="height", action=TrackingAction, type=int, default=None, help="Emulated screen height")
    audit_parser.add_argument("--device-scale-factor", dest="device_scale_factor", action=TrackingAction, type=float, default=None, help="Emulated device scale factor")
    audit_parser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=None, choices=VALID_CATEGORIES, help="Lighthouse categories (default: all four)")
    audit_parser.add_argument("--output-formats", dest="output_formats", action=TrackingAction, nargs="+", default=None, choices=VALID_OUTPUT_FORMATS, help="Raw report formats to store (default: html json)")
    audit_parser.add_argument("--port", dest="browser_port", action=TrackingAction, type=int, default=None, help="Debugging port of an already running browser")
    audit_parser.add_argument("--log-level", dest="log_level", action=TrackingAction, default=None, choices=VALID_LOG_LEVELS, help="Lighthouse log verbosity")
    audit_parser.add_argument("--metrics", dest="metrics", action=TrackingAction, nargs="+", default=None, help="Audit ids to aggregate into auditStats.json")
    audit_parser.add_argument("--aggregation", dest="aggregation", action=TrackingAction, default=DEFAULT_AGGREGATION, choices=VALID_AGGREGATIONS, help="Average mode: running pairwise (default) or true mean")
    audit_parser.add_argument("--lighthouse-bin", dest="lighthouse_bin", action=TrackingAction, default=None, help="Path to the lighthouse executable")

    # --- stats ---
    stats_parser = subparsers.add_parser("stats", help="Rebuild auditStats.json from a job's stored results")
    stats_parser.add_argument("job_id", help="Job identifier (directory name under the output dir)")
    stats_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Root directory for job output")
    stats_parser.add_argument("--metrics", dest="metrics", action=TrackingAction, nargs="+", default=None, help="Audit ids to aggregate")
    stats_parser.add_argument("--aggregation", dest="aggregation", action=TrackingAction, default=DEFAULT_AGGREGATION, choices=VALID_AGGREGATIONS, help="Average mode")

    # --- show ---
    show_parser = subparsers.add_parser("show", help="Print a job's aggregate stats")
    show_parser.add_argument("job_id", nargs="?", default=None, help="Job identifier (default: most recent job)")
    show_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Root directory for job output")

    # --- serve ---
    serve_parser = subparsers.add_parser("serve", help="Serve the stats viewer over HTTP")
    serve_parser.add_argument("--host", dest="host", default=DEFAULT_VIEWER_HOST, help="Interface to bind")
    serve_parser.add_argument("--port", dest="port", type=int, default=DEFAULT_VIEWER_PORT, help="Port to listen on")
    serve_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Root directory for job output")

    return parser


# ---------------------------------------------------------------------------
# Input List
# ---------------------------------------------------------------------------


def parse_pages(content: str, verbose: bool = False) -> dict[str, str]:
    """Parse 'name,url' lines into {name: url}. Lines with an empty field are dropped."""
    pages: dict[str, str] = {}
    for line_number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        parts = [part.strip() for part in line.split(",")]
        name = parts[0]
        url = parts[1] if len(parts) > 1 else ""
        if not name or not url:
            if verbose:
                print(f"Warning: skipping line {line_number}: {line.strip()}", file=sys.stderr)
            continue
        pages[name] = url
    return pages


def load_pages(file_path: str, verbose: bool = False) -> dict[str, str]:
    path = Path(file_path)
    try:
        content = path.read_text()
    except OSError as exc:
        print(f"Error: cannot read input file {file_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    return parse_pages(content, verbose)


def resolve_input_file(input_file: str | None) -> str:
    """Use the given path, else prompt on a terminal, else fall back to the default."""
    if input_file:
        return input_file
    if sys.stdin.isatty():
        answer = input(f"Input file [{DEFAULT_INPUT_FILE}]: ").strip()
        return answer or DEFAULT_INPUT_FILE
    return DEFAULT_INPUT_FILE


# ---------------------------------------------------------------------------
# Audit Sessions
# ---------------------------------------------------------------------------


class AuditSession:
    """A scoped audit engine shared by every page of one batch."""

    name = "audit"

    def __init__(self, options: dict, verbose: bool = False):
        self.options = options
        self.verbose = verbose
        self._closed = False

    def run(self, url: str) -> AuditRun:
        raise NotImplementedError

    def release(self) -> None:
        pass

    def close(self) -> None:
        """Release the session once; failures are reported, not raised."""
        if self._closed:
            return
        self._closed = True
        try:
            self.release()
        except Exception as exc:
            print(f"Warning: failed to release {self.name} session: {exc}", file=sys.stderr)


def build_lighthouse_command(url: str, options: dict, output_path: Path) -> list[str]:
    """Build the lighthouse CLI invocation for one URL."""
    emulation = options["screen_emulation"]
    command = [
        options["lighthouse_bin"],
        url,
        f"--form-factor={options['form_factor']}",
        f"--screenEmulation.mobile={str(emulation['mobile']).lower()}",
        f"--screenEmulation.width={emulation['width']}",
        f"--screenEmulation.height={emulation['height']}",
        f"--screenEmulation.deviceScaleFactor={emulation['device_scale_factor']}",
        f"--screenEmulation.disabled={str(emulation['disabled']).lower()}",
        f"--output-path={output_path}",
    ]
    for output_format in options["output"]:
        command.append(f"--output={output_format}")
    if options["only_categories"]:
        command.append(f"--only-categories={','.join(options['only_categories'])}")
    if options["port"]:
        command.append(f"--port={options['port']}")
    elif options["chrome_flags"]:
        command.append(f"--chrome-flags={' '.join(options['chrome_flags'])}")
    log_level = options["log_level"]
    if log_level in ("silent", "error"):
        command.append("--quiet")
    elif log_level == "verbose":
        command.append("--verbose")
    return command


def _report_paths(output_path: Path, formats: list[str]) -> dict[str, Path]:
    # lighthouse writes <path>.report.<ext> when more than one output is requested
    if len(formats) == 1:
        return {formats[0]: output_path}
    return {fmt: output_path.with_name(f"{output_path.name}.report.{fmt}") for fmt in formats}


class LighthouseCliSession(AuditSession):
    """Runs the local lighthouse CLI; reports land in a session temp directory."""

    name = "lighthouse"

    def __init__(self, options: dict, verbose: bool = False):
        super().__init__(options, verbose)
        if shutil.which(options["lighthouse_bin"]) is None:
            raise AuditError(f"lighthouse executable not found: {options['lighthouse_bin']}")
        self._workdir = tempfile.TemporaryDirectory(prefix="lighthouse-batch-")
        self._run_count = 0

    def run(self, url: str) -> AuditRun:
        self._run_count += 1
        formats = list(dict.fromkeys(self.options["output"] + ["json"]))
        output_path = Path(self._workdir.name) / f"run-{self._run_count}"
        command = build_lighthouse_command(url, {**self.options, "output": formats}, output_path)
        if self.verbose:
            print(f"  $ {' '.join(command)}", file=sys.stderr)

        try:
            completed = subprocess.run(command, capture_output=True, text=True, timeout=CLI_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise AuditError(f"lighthouse did not complete for {url}: {exc}") from exc
        if completed.returncode != 0:
            detail = (completed.stderr or "").strip().splitlines()
            raise AuditError(f"lighthouse exited with {completed.returncode} for {url}: {detail[-1] if detail else ''}")

        reports: dict[str, str] = {}
        for fmt, report_path in _report_paths(output_path, formats).items():
            if not report_path.is_file():
                raise AuditError(f"lighthouse produced no {fmt} report for {url}")
            reports[fmt] = report_path.read_text()

        try:
            lhr = json.loads(reports["json"])
        except ValueError as exc:
            raise AuditError(f"unreadable lighthouse result for {url}: {exc}") from exc
        requested = {fmt: text for fmt, text in reports.items() if fmt in self.options["output"]}
        return AuditRun(lhr=lhr, reports=requested)

    def release(self) -> None:
        self._workdir.cleanup()


class PageSpeedSession(AuditSession):
    """Runs Lighthouse remotely through the PageSpeed Insights v5 API."""

    name = "pagespeed"

    def __init__(self, options: dict, verbose: bool = False):
        super().__init__(options, verbose)
        self._http = requests.Session()

    def _params(self, url: str) -> dict[str, str | list[str]]:
        params: dict[str, str | list[str]] = {
            "url": url,
            "strategy": self.options["form_factor"],
            "category": [c.upper().replace("-", "_") for c in self.options["only_categories"]],
        }
        if self.options.get("api_key"):
            params["key"] = self.options["api_key"]
        return params

    def run(self, url: str) -> AuditRun:
        """Fetch one result, retrying 429/500/503 with exponential backoff."""
        params = self._params(url)
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = self._http.get(PAGESPEED_API_URL, params=params, timeout=PSI_TIMEOUT)

                if response.status_code == 200:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        raise AuditError(f"unreadable response for {url}: {exc}") from exc
                    lhr = payload.get("lighthouseResult") if isinstance(payload, dict) else None
                    if not lhr or not isinstance(lhr, dict):
                        raise AuditError(f"no lighthouseResult in response for {url}")
                    reports = {}
                    if "json" in self.options["output"]:
                        reports["json"] = json.dumps(lhr, indent=2)
                    return AuditRun(lhr=lhr, reports=reports)

                if response.status_code in RETRYABLE_STATUS_CODES:
                    wait_time = RETRY_BASE_DELAY * (2**attempt)
                    retry_after = response.headers.get("Retry-After")
                    if retry_after and response.status_code == 429:
                        # Retry-After may also be an HTTP-date; keep the backoff then.
                        try:
                            wait_time = float(retry_after)
                        except ValueError:
                            pass
                    last_error = AuditError(f"HTTP {response.status_code} for {url}")
                    if attempt < MAX_RETRIES:
                        time.sleep(wait_time)
                        continue

                error_detail = ""
                try:
                    error_body = response.json()
                    error_detail = error_body.get("error", {}).get("message", response.text[:200])
                except (ValueError, KeyError, AttributeError):
                    error_detail = response.text[:200]
                raise AuditError(f"HTTP {response.status_code} for {url}: {error_detail}")

            except requests.RequestException as exc:
                last_error = exc
                if attempt < MAX_RETRIES:
                    time.sleep(RETRY_BASE_DELAY * (2**attempt))
                    continue

        raise AuditError(f"Failed after {MAX_RETRIES + 1} attempts for {url}: {last_error}")

    def release(self) -> None:
        self._http.close()


SESSION_BACKENDS = {
    "cli": LighthouseCliSession,
    "psi": PageSpeedSession,
}


@contextmanager
def open_audit_session(options: dict, verbose: bool = False) -> Iterator[AuditSession]:
    """Yield the configured session and release it exactly once on exit."""
    backend = options["backend"]
    if backend not in SESSION_BACKENDS:
        raise AuditError(f"unknown audit backend: {backend}")
    session = SESSION_BACKENDS[backend](options, verbose)
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Batch Processing
# ---------------------------------------------------------------------------


def _log_page_result(lhr: dict) -> None:
    displayed_url = lhr.get("finalDisplayedUrl") or lhr.get("finalUrl") or lhr.get("requestedUrl")
    print(f"  Report is done for {displayed_url}", file=sys.stderr)
    score = ((lhr.get("categories") or {}).get("performance") or {}).get("score")
    if score is not None:
        print(f"  Performance score was {round(score * 100)}", file=sys.stderr)
    else:
        print("  Performance score was not available.", file=sys.stderr)


def process_pages(
    pages: dict[str, str],
    session: AuditSession,
    job_path: Path | None = None,
    verbose: bool = False,
) -> dict[str, AuditRun | None]:
    """Audit pages one at a time; a failed page is recorded as None and skipped."""
    runs: dict[str, AuditRun | None] = {}
    total = len(pages)
    for index, (page_name, page_url) in enumerate(pages.items(), start=1):
        print(f"[{index}/{total}] {page_name}: {page_url}", file=sys.stderr)
        try:
            run = session.run(page_url)
        except AuditError as exc:
            print(f"  Error: audit failed for {page_name}: {exc}", file=sys.stderr)
            runs[page_name] = None
            continue

        if job_path is not None:
            written = write_page_reports(job_path, page_name, run.reports)
            if verbose:
                for filepath in written:
                    print(f"  Wrote {filepath}", file=sys.stderr)
        _log_page_result(run.lhr)
        runs[page_name] = run
    return runs


def build_pages_dataframe(pages: dict[str, str], runs: dict[str, AuditRun | None]) -> pd.DataFrame:
    """One row per page: url, resolved url, 0-100 category scores, error flag."""
    rows = []
    for page_name, page_url in pages.items():
        run = runs.get(page_name)
        row: dict[str, object] = {"page": page_name, "url": page_url}
        if run is None:
            row["resolved_url"] = None
            row["error"] = "audit failed"
            rows.append(row)
            continue
        result = AuditResult.from_lhr(run.lhr)
        row["resolved_url"] = result.resolved_url
        row["error"] = None
        for category in VALID_CATEGORIES:
            score = result.category_scores.get(category)
            column_name = category.replace("-", "_") + "_score"
            row[column_name] = round(score * 100) if score is not None else None
        rows.append(row)
    return pd.DataFrame(rows)


def _print_audit_summary(dataframe: pd.DataFrame) -> None:
    """Print page counts and performance score spread to stderr."""
    print("\nSummary:", file=sys.stderr)
    print(f"  Pages audited: {len(dataframe)}", file=sys.stderr)

    if "performance_score" in dataframe.columns:
        scores = dataframe["performance_score"].dropna()
        if len(scores) > 0:
            print(f"  Avg score:     {scores.mean():.0f}", file=sys.stderr)
            print(f"  Min score:     {scores.min():.0f}", file=sys.stderr)
            print(f"  Max score:     {scores.max():.0f}", file=sys.stderr)

    failures = dataframe[dataframe["error"].notna()] if "error" in dataframe.columns else pd.DataFrame()
    if len(failures) > 0:
        print(f"  Failed:        {len(failures)}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Report Store
# ---------------------------------------------------------------------------


def default_job_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _safe_name(name: str) -> str:
    return name.replace("/", "_").replace("\\", "_")


def prepare_job_dir(output_dir: str, job_id: str) -> Path:
    """Create (if needed) and return the job directory."""
    job_path = Path(output_dir) / job_id
    job_path.mkdir(parents=True, exist_ok=True)
    return job_path


def write_page_reports(job_path: Path, page_name: str, reports: dict[str, str]) -> list[str]:
    """Write <page>.<format> for each rendered report. Returns written paths."""
    written: list[str] = []
    for output_format, content in reports.items():
        report_path = job_path / f"{_safe_name(page_name)}.{output_format}"
        report_path.write_text(content)
        written.append(str(report_path))
    return written


def write_audit_stats(job_path: Path, stats: dict[str, dict[str, DomainMetricSummary]]) -> str:
    stats_path = job_path / STATS_FILENAME
    with open(stats_path, "w") as fh:
        json.dump(stats_to_dict(stats), fh, indent=2)
    return str(stats_path)


def output_pages_csv(dataframe: pd.DataFrame, job_path: Path) -> str:
    """Write the per-page score table. Returns the file path."""
    csv_path = job_path / PAGES_CSV_FILENAME
    dataframe.to_csv(csv_path, index=False)
    return str(csv_path)


def load_page_results(job_path: Path) -> dict[str, dict]:
    """Read every stored per-page LHR JSON in a job directory."""
    results: dict[str, dict] = {}
    for json_path in sorted(job_path.glob("*.json")):
        if json_path.name == STATS_FILENAME:
            continue
        try:
            with open(json_path) as fh:
                results[json_path.stem] = json.load(fh)
        except (OSError, ValueError) as exc:
            print(f"Warning: skipping unreadable result {json_path}: {exc}", file=sys.stderr)
    return results


def list_jobs(output_dir: str) -> list[str]:
    """Job directory names, most recent (lexicographically greatest) first."""
    root = Path(output_dir)
    if not root.is_dir():
        return []
    return sorted((entry.name for entry in root.iterdir() if entry.is_dir()), reverse=True)


def read_audit_stats(output_dir: str, job_id: str) -> str | None:
    """Return the stored auditStats.json text, or None when unavailable."""
    if not job_id or job_id != Path(job_id).name or job_id in (".", ".."):
        return None
    stats_path = Path(output_dir) / job_id / STATS_FILENAME
    try:
        return stats_path.read_text()
    except OSError:
        return None


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


def display_score(score: float) -> float:
    """Score rounded to one decimal, as the viewer shows it (JS toFixed(1))."""
    return float(Decimal(score).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def score_indicator(score: float | None) -> str:
    if score is None:
        return "N/A"
    score = display_score(score)
    if score < SCORE_POOR:
        return "POOR"
    if score < SCORE_AVERAGE:
        return "NEEDS WORK"
    return "GOOD"


def format_metric_value(summary: dict) -> str:
    """Render 'avg (min-max)' in seconds, or bare numbers for unitless metrics."""
    if summary.get("unit") == UNITLESS:
        unit, scale, digits = "", 1, UNITLESS_PRECISION
    else:
        unit, scale, digits = "s", 1000, 1
    low, high, avg = (f"{summary[key] / scale:.{digits}f}" for key in ("min", "max", "avg"))
    range_string = f"{low}{unit}" if low == high else f"({low}-{high}{unit})"
    avg_string = f"{avg}{unit}"
    return avg_string if avg_string == range_string else f"{avg_string} {range_string}"


def format_stats_table(stats: dict) -> str:
    lines = []
    for domain, metrics in stats.items():
        lines.append(f"\n{'=' * 60}")
        lines.append(f"  {domain}")
        lines.append(f"{'=' * 60}")
        for metric in sorted(metrics):
            summary = metrics[metric]
            indicator = score_indicator(summary.get("score"))
            lines.append(f"  {metric:.<36} {format_metric_value(summary)} [{indicator}]")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Viewer
# ---------------------------------------------------------------------------


def generate_viewer_html(job_ids: list[str]) -> str:
    """Job picker page; stats are fetched from /stats and rendered client-side."""
    options_html = "".join(
        f'<option value="{html.escape(job_id)}">{html.escape(job_id)}</option>' for job_id in job_ids
    )
    latest = json.dumps(job_ids[0]) if job_ids else "null"

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Lighthouse Reports</title>
</head>
<body>
<h1>Lighthouse Reports</h1>
<p>Choose a job to view the Lighthouse report:</p>
<select id="directorySelect">{options_html}</select>
<div id="stats"></div>
<script>
async function fetchStats(dir) {{
    const response = await fetch('/stats?dir=' + encodeURIComponent(dir));
    const statsDiv = document.getElementById('stats');
    statsDiv.innerHTML = '';
    if (!response.ok) {{
        statsDiv.textContent = 'No stats for ' + dir;
        return;
    }}
    const stats = await response.json();
    for (const domain in stats) {{
        const domainBlock = document.createElement('div');
        const domainHeading = document.createElement('h2');
        domainHeading.textContent = domain;
        domainBlock.appendChild(domainHeading);
        const metrics = stats[domain];
        for (const metric of Object.keys(metrics).sort()) {{
            const summary = metrics[metric];
            const unitless = summary.unit === '{UNITLESS}';
            const unit = unitless ? '' : 's';
            const scale = unitless ? 1 : 1000;
            const digits = unitless ? {UNITLESS_PRECISION} : 1;
            const min = (summary.min / scale).toFixed(digits);
            const max = (summary.max / scale).toFixed(digits);
            const avg = (summary.avg / scale).toFixed(digits);
            const rangeString = min === max ? `${{min}}${{unit}}` : `(${{min}}-${{max}}${{unit}})`;
            const avgString = `${{avg}}${{unit}}`;
            const mainString = avgString === rangeString ? avgString : `${{avgString}} ${{rangeString}}`;
            const score = summary.score === null ? null : Number(summary.score.toFixed(1));
            const indicator = score === null ? '\\u26AA'
                : score < {SCORE_POOR} ? '\\u{{1F534}}'
                : score < {SCORE_AVERAGE} ? '\\u{{1F7E1}}' : '\\u{{1F7E2}}';
            const metricHeading = document.createElement('p');
            metricHeading.textContent = `${{indicator}} ${{metric}}: ${{mainString}}`;
            domainBlock.appendChild(metricHeading);
        }}
        statsDiv.appendChild(domainBlock);
    }}
}}
document.getElementById('directorySelect').addEventListener('change', function() {{
    fetchStats(this.value);
}});
const latestJob = {latest};
if (latestJob !== null) {{
    fetchStats(latestJob);
}}
</script>
</body>
</html>"""


def create_viewer_app(output_dir: str = DEFAULT_OUTPUT_DIR) -> FastAPI:
    app = FastAPI(title="Lighthouse Reports", version=__version__)

    @app.get("/", response_class=HTMLResponse)
    def index() -> HTMLResponse:
        return HTMLResponse(generate_viewer_html(list_jobs(output_dir)))

    @app.get("/stats")
    def stats(job_id: str | None = Query(default=None, alias="dir")) -> Response:
        content = read_audit_stats(output_dir, job_id) if job_id else None
        if content is None:
            return PlainTextResponse("File not found", status_code=404)
        return Response(content=content, media_type="application/json")

    return app


# ---------------------------------------------------------------------------
# Subcommand: audit
# ---------------------------------------------------------------------------


def cmd_audit(args: argparse.Namespace) -> None:
    """Audit every page of the input list and write the job directory."""
    verbose = getattr(args, "verbose", False)
    input_file = resolve_input_file(getattr(args, "input_file", None))
    pages = load_pages(input_file, verbose)
    if not pages:
        print(f"Warning: no pages found in {input_file}", file=sys.stderr)

    options = build_audit_options(args)
    metrics = getattr(args, "metrics", None) or DEFAULT_METRICS
    job_id = getattr(args, "job_id", None) or default_job_id()
    output_dir = getattr(args, "output_dir", DEFAULT_OUTPUT_DIR)

    print(f"Auditing {len(pages)} page(s) with backend: {options['backend']} ({options['form_factor']})", file=sys.stderr)
    try:
        with open_audit_session(options, verbose) as session:
            # The job directory exists only once a session has started.
            job_path = prepare_job_dir(output_dir, job_id)
            runs = process_pages(pages, session, job_path, verbose)
    except AuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    results = [AuditResult.from_lhr(run.lhr) for run in runs.values() if run is not None]
    stats = aggregate(results, metrics, getattr(args, "aggregation", DEFAULT_AGGREGATION))
    dataframe = build_pages_dataframe(pages, runs)

    written_files = [write_audit_stats(job_path, stats), output_pages_csv(dataframe, job_path)]
    print("\nResults written to:", file=sys.stderr)
    for filepath in written_files:
        print(f"  {filepath}", file=sys.stderr)
    _print_audit_summary(dataframe)


# ---------------------------------------------------------------------------
# Subcommand: stats
# ---------------------------------------------------------------------------


def cmd_stats(args: argparse.Namespace) -> None:
    """Recompute auditStats.json for an existing job."""
    job_path = Path(args.output_dir) / args.job_id
    if not job_path.is_dir():
        print(f"Error: job not found: {job_path}", file=sys.stderr)
        sys.exit(1)

    stored = load_page_results(job_path)
    if not stored:
        print(f"Error: no stored results for job {args.job_id} in {job_path}", file=sys.stderr)
        sys.exit(1)
    results = [AuditResult.from_lhr(lhr) for lhr in stored.values()]
    metrics = getattr(args, "metrics", None) or DEFAULT_METRICS
    stats = aggregate(results, metrics, getattr(args, "aggregation", DEFAULT_AGGREGATION))
    stats_path = write_audit_stats(job_path, stats)
    print(f"Aggregated {len(results)} result(s) into {stats_path}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Subcommand: show
# ---------------------------------------------------------------------------


def cmd_show(args: argparse.Namespace) -> None:
    """Print a job's aggregate stats to stdout."""
    job_id = args.job_id
    if not job_id:
        jobs = list_jobs(args.output_dir)
        if not jobs:
            print(f"Error: no jobs in {args.output_dir}", file=sys.stderr)
            sys.exit(1)
        job_id = jobs[0]

    content = read_audit_stats(args.output_dir, job_id)
    if content is None:
        print(f"Error: no {STATS_FILENAME} for job {job_id}", file=sys.stderr)
        sys.exit(1)
    print(f"Job: {job_id}")
    print(format_stats_table(json.loads(content)))


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------


def cmd_serve(args: argparse.Namespace) -> None:
    app = create_viewer_app(args.output_dir)
    print(f"Server running on http://{args.host}:{args.port}", file=sys.stderr)
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "audit": cmd_audit,
        "stats": cmd_stats,
        "show": cmd_show,
        "serve": cmd_serve,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
