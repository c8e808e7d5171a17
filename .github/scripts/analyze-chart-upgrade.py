#!/usr/bin/env python
"""
Analyze a Helm chart dependency bump opened by the update bot.

Renders the old and new dependency versions against every custom values
file, diffs chart defaults and rendered manifests with dyff, asks the
inference endpoint for a verdict when anything changed, then comments on
the PR and applies exactly one of the analysis labels.
"""
import sys
import os
import re
import json
import time
import enum
import shutil
import asyncio
import tarfile
import argparse
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp
import aiofiles
import yaml
from packaging.version import Version, InvalidVersion

CONFIG_PATH = Path(".chart-analysis.yaml")

NEW_TEMPLATES_DIR = "new_templates"
OLD_TEMPLATES_DIR = "old_templates"
DIFF_OUTPUTS_DIR = "diff_outputs"
OLD_CHART_DIR = "old_chart"

DEFAULT_VALUES_FILE = "chart_default_values.yaml"
OLD_VALUES_FILE = "old_chart_values.yaml"
PROMPT_FILE = "full_prompt.txt"
PAYLOAD_FILE = "ai_payload.json"
RESPONSE_FILE = "ai_response.json"
ANALYSIS_FILE = "ai_analysis.md"
SUMMARY_FILE = "diff_summary.md"

TEMP_REPO_NAME = "temp-old-repo"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "chartsRoot": "k8s/charts",
    "valuesPattern": "values.*.yaml",
    "helm": {
        # --validate --dry-run=server needs cluster access from the runner; without
        # it every render fails and no manifest comparison can happen
        "validate": True,
    },
    "kubectl": {
        "validate": False,
        "dryRun": "client",
    },
    "ai": {
        "endpoint": "https://models.github.ai/inference/chat/completions",
        "model": "openai/gpt-4o",
        "maxAttempts": 3,
        "timeout": 300,
    },
}


class AnalysisError(Exception):
    """Fatal condition: the job stops with a non-zero status."""


class Decision(enum.Enum):
    BREAKING = "breaking-changes"
    SAFE = "ready-to-merge"
    NEEDS_REVIEW = "needs-review"
    UNDETERMINED = "undetermined"

    @property
    def label(self) -> str:
        """GitHub label applied for this decision."""
        if self is Decision.UNDETERMINED:
            return Decision.NEEDS_REVIEW.value
        return self.value

    @property
    def breaking_output(self) -> str:
        if self is Decision.BREAKING:
            return "true"
        if self is Decision.SAFE:
            return "false"
        return "unknown"


ANALYSIS_LABELS = [Decision.BREAKING.value, Decision.SAFE.value, Decision.NEEDS_REVIEW.value]

LABEL_COLORS = {
    Decision.BREAKING.value: "d73a49",
    Decision.SAFE.value: "0e8a16",
    Decision.NEEDS_REVIEW.value: "fbca04",
}

AI_LABEL_DESCRIPTIONS = {
    Decision.BREAKING: "Breaking changes detected",
    Decision.SAFE: "Safe to merge",
    Decision.NEEDS_REVIEW: "Requires manual review",
    Decision.UNDETERMINED: "Requires manual review",
}

# Searched line by line, in priority order
LABEL_PATTERNS = [
    (Decision.BREAKING, re.compile(r"label.*breaking-changes", re.IGNORECASE)),
    (Decision.SAFE, re.compile(r"label.*ready-to-merge", re.IGNORECASE)),
    (Decision.NEEDS_REVIEW, re.compile(r"label.*needs-review", re.IGNORECASE)),
]

FALLBACK_NOTE = (
    "AI analysis unavailable - falling back to helm template validation results. "
    "Helm validation passed successfully."
)

# Compiled regex patterns for version normalization
PATTERN_SIMPLE = re.compile(r'^v?(\d+\.\d+\.\d+)$')
PATTERN_PRERELEASE = re.compile(r'^v?(\d+\.\d+\.\d+)-([0-9A-Za-z.-]+)$')


# ----------------- CONFIG -----------------


async def load_yaml(path: Path) -> dict:
    """Load YAML file asynchronously."""
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
        return yaml.safe_load(content)


def merge_settings(defaults: dict, overrides: Optional[dict]) -> dict:
    """Recursively overlay user settings on top of the defaults."""
    if not isinstance(overrides, dict):
        overrides = None
    merged = {}
    for key, value in defaults.items():
        if isinstance(value, dict):
            merged[key] = merge_settings(value, (overrides or {}).get(key))
        else:
            merged[key] = value
    for key, value in (overrides or {}).items():
        if key in defaults and isinstance(defaults[key], dict):
            continue
        merged[key] = value
    return merged


async def load_settings(path: Path = CONFIG_PATH, environ: Optional[Dict[str, str]] = None) -> dict:
    """Defaults, then the optional repository config file, then env overrides."""
    environ = os.environ if environ is None else environ
    overrides = None
    if path.exists():
        overrides = await load_yaml(path)
        if overrides is not None and not isinstance(overrides, dict):
            print(f"  [WARN] {path} is not a mapping, ignoring it")
            overrides = None

    settings = merge_settings(DEFAULT_SETTINGS, overrides)
    if environ.get("AI_MODEL"):
        settings["ai"]["model"] = environ["AI_MODEL"]
    if environ.get("AI_ENDPOINT"):
        settings["ai"]["endpoint"] = environ["AI_ENDPOINT"]
    return settings


# ----------------- VERSIONS -----------------


def normalize_version_string(tag: str) -> str:
    """
    Normalize a chart version to something packaging can parse.

    Strips a leading 'v' and keeps semver pre-release parts so they still
    compare as pre-releases:
        v1.2.3 -> 1.2.3
        1.2.3-rc.1 -> 1.2.3rc1
        1.2.3-foo -> 1.2.3
    """
    tag = tag.strip()
    m = PATTERN_SIMPLE.match(tag)
    if m:
        return m.group(1)

    m = PATTERN_PRERELEASE.match(tag)
    if m:
        if not m.group(2)[0].isalpha():
            return m.group(1)
        candidate = f"{m.group(1)}{m.group(2).replace('.', '').replace('-', '')}"
        try:
            Version(candidate)
            return candidate
        except InvalidVersion:
            return m.group(1)

    # Fallback: leading digits and dots only
    tag = tag.lstrip('v')
    core = ''
    for ch in tag:
        if ch.isdigit() or ch == '.':
            core += ch
        else:
            break
    return core.strip('.')


def classify_version_bump(old: str, new: str) -> str:
    """Return 'major', 'minor', 'patch' or 'unknown' for a version transition."""
    try:
        old_v = Version(normalize_version_string(old))
        new_v = Version(normalize_version_string(new))
    except InvalidVersion:
        return "unknown"
    if new_v == old_v:
        return "unknown"
    if new_v.major != old_v.major:
        return "major"
    if new_v.minor != old_v.minor:
        return "minor"
    return "patch"


# ----------------- CONTEXT -----------------


@dataclass(frozen=True)
class RunContext:
    chart_name: str
    dependency_name: str
    old_version: str
    new_version: str
    working_dir: Path
    pr_number: Optional[str] = None
    dry_run: bool = False

    @property
    def new_templates(self) -> Path:
        return self.working_dir / NEW_TEMPLATES_DIR

    @property
    def old_templates(self) -> Path:
        return self.working_dir / OLD_TEMPLATES_DIR

    @property
    def diff_outputs(self) -> Path:
        return self.working_dir / DIFF_OUTPUTS_DIR

    @property
    def charts_dir(self) -> Path:
        return self.working_dir / "charts"

    @property
    def new_chart_path(self) -> Path:
        return self.charts_dir / self.dependency_name

    @property
    def old_chart_root(self) -> Path:
        return self.working_dir / OLD_CHART_DIR

    @property
    def old_chart_path(self) -> Path:
        return self.old_chart_root / self.dependency_name

    @property
    def chart_diff(self) -> Path:
        return self.diff_outputs / "chart_diff.txt"

    @property
    def version_bump(self) -> str:
        return classify_version_bump(self.old_version, self.new_version)

    def artifact(self, name: str) -> Path:
        return self.working_dir / name

    def template_diff(self, values_name: str) -> Path:
        return self.diff_outputs / f"template_diff_{values_name}.txt"

    def new_manifest(self, values_name: str) -> Path:
        return manifest_path(self.new_templates, "new-template", values_name)

    def old_manifest(self, values_name: str) -> Path:
        return manifest_path(self.old_templates, "old-template", values_name)

    def helm_validation(self, values_name: str) -> Path:
        return helm_validation_path(self.new_templates, "new-template", values_name)

    def kubectl_validation(self, values_name: str) -> Path:
        return self.new_templates / f"new-template-{values_name}-kubectl-validation.txt"


def manifest_path(output_dir: Path, prefix: str, values_name: str) -> Path:
    return output_dir / f"{prefix}-{values_name}.yaml"


def helm_validation_path(output_dir: Path, prefix: str, values_name: str) -> Path:
    return output_dir / f"{prefix}-{values_name}-helm-validation.txt"


def build_context(chart_name: str, dependency_name: str, old_version: str, new_version: str,
                  charts_root: Path, pr_number: Optional[str] = None, dry_run: bool = False) -> RunContext:
    """Resolve the chart working directory and create the artifact directories."""
    working_dir = charts_root / chart_name
    if not working_dir.is_dir():
        raise AnalysisError(f"Working directory does not exist: {working_dir}")

    ctx = RunContext(
        chart_name=chart_name,
        dependency_name=dependency_name,
        old_version=old_version,
        new_version=new_version,
        working_dir=working_dir,
        pr_number=pr_number,
        dry_run=dry_run,
    )
    for directory in (ctx.new_templates, ctx.old_templates, ctx.diff_outputs):
        directory.mkdir(parents=True, exist_ok=True)

    print(f"[INFO] Context set: CHART_NAME={chart_name}, DEPENDENCY_NAME={dependency_name}")
    print(f"[INFO] OLD_VERSION={old_version}, NEW_VERSION={new_version} ({ctx.version_bump})")
    return ctx


def list_values_files(working_dir: Path, pattern: str = DEFAULT_SETTINGS["valuesPattern"]) -> List[Path]:
    """Custom values files, listed fresh on every call."""
    return sorted(p for p in working_dir.glob(pattern) if p.is_file())


def values_name(values_file: Path) -> str:
    """values.prod.yaml -> values.prod"""
    return values_file.stem


# ----------------- FILES & OUTPUTS -----------------


async def read_text(path: Path) -> str:
    """Read a text artifact; a missing file reads as empty."""
    if not path.is_file():
        return ""
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return await f.read()


async def write_text(path: Path, text: str) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(text)


def set_outputs(outputs: Dict[str, Any]) -> None:
    """Append key=value pairs to $GITHUB_OUTPUT, or print them when run locally."""
    lines = [f"{key}={value}" for key, value in outputs.items()]
    output_path = os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        for line in lines:
            print(f"[OUTPUT] {line}")
        return
    with open(output_path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")


def bool_output(value: bool) -> str:
    return "true" if value else "false"


# ----------------- EXTERNAL TOOLS -----------------


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(args: List[str], cwd: Optional[Path] = None) -> CommandResult:
    """Run an external tool to completion and capture its output."""
    print(f"  [DEBUG] $ {' '.join(args)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(127, "", f"{args[0]}: command not found")
    stdout, stderr = await proc.communicate()
    return CommandResult(
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


Runner = Callable[..., Awaitable[CommandResult]]


class HelmCli:
    def __init__(self, runner: Runner = run_command):
        self.run = runner

    async def pull(self, chart_ref: str, version: str, untardir: Path) -> CommandResult:
        return await self.run(["helm", "pull", chart_ref, "--version", version, "--untar", "--untardir", str(untardir)])

    async def repo_add(self, name: str, url: str) -> CommandResult:
        return await self.run(["helm", "repo", "add", name, url, "--force-update"])

    async def repo_remove(self, name: str) -> CommandResult:
        return await self.run(["helm", "repo", "remove", name])

    async def template(self, release: str, chart_path: Path, values_file: Path, validate: bool) -> CommandResult:
        args = ["helm", "template", release, str(chart_path), "-f", str(values_file)]
        if validate:
            args += ["--validate", "--dry-run=server"]
        return await self.run(args)


class DyffCli:
    def __init__(self, runner: Runner = run_command):
        self.run = runner

    async def between(self, old: Path, new: Path) -> CommandResult:
        return await self.run(["dyff", "between", "--omit-header", "--color=off", str(old), str(new)])


class KubectlCli:
    def __init__(self, runner: Runner = run_command):
        self.run = runner

    async def dry_run(self, manifest: Path, mode: str) -> CommandResult:
        return await self.run(["kubectl", "apply", f"--dry-run={mode}", "-f", str(manifest)])


class GitHubCli:
    """Label and comment operations on the PR through the gh CLI."""

    def __init__(self, runner: Runner = run_command):
        self.run = runner

    @staticmethod
    def _pr_args(pr_number: Optional[str]) -> List[str]:
        # Without a number gh resolves the PR from the checked-out branch
        return [str(pr_number)] if pr_number else []

    async def ensure_label_exists(self, label: str, description: str, color: str) -> None:
        result = await self.run(["gh", "label", "create", label, "--color", color, "--description", description])
        if result.ok or "already exists" in result.stderr.lower():
            return
        print(f"  [WARN] Could not create label {label}: {result.stderr.strip()}")

    async def ensure_label_absent(self, pr_number: Optional[str], label: str) -> None:
        result = await self.run(["gh", "pr", "edit", *self._pr_args(pr_number), "--remove-label", label])
        if not result.ok:
            print(f"  [DEBUG] Label {label} not removed (not present?): {result.stderr.strip()}")

    async def add_label(self, pr_number: Optional[str], label: str) -> None:
        result = await self.run(["gh", "pr", "edit", *self._pr_args(pr_number), "--add-label", label])
        if not result.ok:
            raise AnalysisError(f"Failed to add label {label}: {result.stderr.strip()}")

    async def comment(self, pr_number: Optional[str], body_file: Path) -> None:
        result = await self.run(["gh", "pr", "comment", *self._pr_args(pr_number), "--body-file", str(body_file)])
        if not result.ok:
            raise AnalysisError(f"Failed to post PR comment: {result.stderr.strip()}")


@dataclass
class Toolbox:
    helm: HelmCli = field(default_factory=HelmCli)
    dyff: DyffCli = field(default_factory=DyffCli)
    kubectl: KubectlCli = field(default_factory=KubectlCli)
    github: GitHubCli = field(default_factory=GitHubCli)


# ----------------- CHART RETRIEVAL -----------------


def find_chart_archive(charts_dir: Path, dependency_name: str, version: str, chart_name: str) -> Optional[Path]:
    """
    Locate the pulled archive of the new chart.

    Prefers the exact <dependency>-<version>.tgz, then any other version of
    the dependency, then falls back to the chart directory name. The version
    part must start with a digit so redis-cluster-*.tgz never matches redis.
    """
    exact = charts_dir / f"{dependency_name}-{version}.tgz"
    if exact.is_file():
        return exact
    for name in (dependency_name, chart_name):
        matches = sorted(charts_dir.glob(f"{name}-[0-9]*.tgz"))
        if matches:
            if name != dependency_name:
                print("[INFO] Archive not found with dependency name, trying chart directory name...")
            return matches[0]
    return None


def extract_archive(archive: Path, destination: Path) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(destination, filter="data")


def find_dependency_repository(chart: Optional[dict], dependency_name: str) -> Optional[str]:
    dependencies = (chart or {}).get("dependencies")
    if not isinstance(dependencies, list):
        return None
    for dep in dependencies:
        if isinstance(dep, dict) and dep.get("name") == dependency_name:
            repository = dep.get("repository")
            return str(repository) if repository else None
    return None


async def extract_new_chart(ctx: RunContext) -> Path:
    """Unpack the new chart archive and copy out its default values."""
    print("[INFO] Extracting new chart from archive...")
    if not ctx.charts_dir.is_dir():
        raise AnalysisError(f"Charts directory not found: {ctx.charts_dir}")

    archive = find_chart_archive(ctx.charts_dir, ctx.dependency_name, ctx.new_version, ctx.chart_name)
    if archive is None:
        raise AnalysisError(f"No chart archive found for {ctx.chart_name}")
    print(f"[INFO] Found chart archive: {archive.name}")

    try:
        extract_archive(archive, ctx.charts_dir)
    except (tarfile.TarError, OSError) as e:
        raise AnalysisError(f"Could not extract {archive.name}: {e}") from e

    values = ctx.new_chart_path / "values.yaml"
    if not values.is_file():
        raise AnalysisError(f"No values.yaml found in {ctx.dependency_name} chart archive")
    shutil.copyfile(values, ctx.artifact(DEFAULT_VALUES_FILE))
    print(f"[INFO] Extracted default values from new {ctx.dependency_name} chart")
    return archive


async def download_old_chart(ctx: RunContext, helm: HelmCli) -> bool:
    """
    Pull the previous dependency version from its declared repository.

    Returns False instead of raising: the caller decides whether the run
    can go on without the old chart.
    """
    print(f"[INFO] Downloading old chart version: {ctx.old_version}")
    chart_file = ctx.working_dir / "Chart.yaml"
    if not chart_file.is_file():
        print(f"[ERROR] Chart.yaml not found in {ctx.working_dir}")
        return False
    repository = find_dependency_repository(await load_yaml(chart_file), ctx.dependency_name)
    if not repository:
        print(f"[ERROR] No repository declared for {ctx.dependency_name} in Chart.yaml")
        return False
    print(f"[INFO] Chart repository: {repository}")

    shutil.rmtree(ctx.old_chart_root, ignore_errors=True)
    ctx.old_chart_root.mkdir(parents=True)

    if repository.startswith("oci://"):
        print(f"[INFO] Downloading from OCI repository: {repository}")
        result = await helm.pull(f"{repository.rstrip('/')}/{ctx.dependency_name}", ctx.old_version, ctx.old_chart_root)
        if not result.ok:
            print(f"[ERROR] Failed to download old chart from OCI repository: {result.stderr.strip()}")
            return False
    else:
        print(f"[INFO] Downloading from Helm repository: {repository}")
        try:
            added = await helm.repo_add(TEMP_REPO_NAME, repository)
            if not added.ok:
                print(f"[ERROR] Failed to add Helm repository: {added.stderr.strip()}")
                return False
            result = await helm.pull(f"{TEMP_REPO_NAME}/{ctx.dependency_name}", ctx.old_version, ctx.old_chart_root)
            if not result.ok:
                print(f"[ERROR] Failed to download old chart from Helm repository: {result.stderr.strip()}")
                return False
        finally:
            await helm.repo_remove(TEMP_REPO_NAME)

    values = ctx.old_chart_path / "values.yaml"
    if not values.is_file():
        print(f"[ERROR] No values.yaml found in downloaded {ctx.dependency_name} chart")
        return False
    shutil.copyfile(values, ctx.artifact(OLD_VALUES_FILE))
    print(f"[INFO] Extracted old chart values from {ctx.dependency_name}")
    return True


# ----------------- TEMPLATING -----------------


@dataclass
class RenderResult:
    values_file: Path
    manifest: Path
    validation: Path
    ok: bool


async def render_chart(helm: HelmCli, chart_path: Path, release: str, output_dir: Path, prefix: str,
                       values_files: List[Path], validate: bool) -> List[RenderResult]:
    """
    Template a chart once per values file.

    A failing render is recorded (its stderr lands in the validation file)
    and the remaining files are still rendered.
    """
    print(f"[INFO] Templating {release} chart with custom values files...")
    results = []
    if not values_files:
        print("[INFO] No custom values files found")
        return results

    for values_file in values_files:
        name = values_name(values_file)
        manifest = manifest_path(output_dir, prefix, name)
        validation = helm_validation_path(output_dir, prefix, name)

        print(f"[INFO] Templating chart with {values_file.name}...")
        result = await helm.template(release, chart_path, values_file, validate)
        await write_text(manifest, result.stdout)
        await write_text(validation, result.stderr)

        if result.ok:
            print(f"[INFO] Helm template validation passed for {values_file.name}")
        else:
            print(f"[ERROR] Helm template validation failed for {values_file.name}")

        print(f"[INFO] Helm template results for {values_file.name}:")
        print("--- START VALIDATION OUTPUT ---")
        print(result.stderr.rstrip() if result.stderr.strip() else "No validation error output")
        print("--- END VALIDATION OUTPUT ---")

        results.append(RenderResult(values_file, manifest, validation, result.ok))
    return results


async def validate_manifests(ctx: RunContext, kubectl: KubectlCli, values_files: List[Path], mode: str) -> None:
    """kubectl dry-run every non-empty new manifest; diagnostics only on failure."""
    for values_file in values_files:
        name = values_name(values_file)
        manifest = ctx.new_manifest(name)
        target = ctx.kubectl_validation(name)
        if not (await read_text(manifest)).strip():
            print(f"[INFO] Skipping kubectl validation for {values_file.name} - no rendered manifest")
            await write_text(target, "")
            continue
        result = await kubectl.dry_run(manifest, mode)
        if result.ok:
            print(f"[INFO] kubectl dry-run validation passed for {values_file.name}")
            await write_text(target, "")
        else:
            print(f"[ERROR] kubectl dry-run validation failed for {values_file.name}")
            await write_text(target, result.stderr or result.stdout)


# ----------------- COMPARISON -----------------


@dataclass
class DiffSummary:
    chart_diff: str = ""
    template_diffs: Dict[str, str] = field(default_factory=dict)
    # values names whose old or new manifest was missing or empty
    uncompared: Set[str] = field(default_factory=set)
    old_chart_available: bool = True

    @property
    def chart_has_diff(self) -> bool:
        return bool(self.chart_diff.strip())

    @property
    def template_diffs_exist(self) -> bool:
        return any(diff.strip() for diff in self.template_diffs.values())

    @property
    def fully_compared(self) -> bool:
        return self.old_chart_available and not self.uncompared

    def compared(self, name: str) -> bool:
        return self.old_chart_available and name not in self.uncompared


@dataclass
class ValidationDiagnostics:
    # values file name -> diagnostic text
    helm: Dict[str, str] = field(default_factory=dict)
    kubectl: Dict[str, str] = field(default_factory=dict)

    def failed_for(self, file_name: str) -> bool:
        return bool(self.helm.get(file_name, "").strip() or self.kubectl.get(file_name, "").strip())

    @property
    def failed(self) -> bool:
        return any(self.failed_for(name) for name in set(self.helm) | set(self.kubectl))


def is_safe_bump(diffs: DiffSummary, diagnostics: ValidationDiagnostics) -> bool:
    """
    Nothing changed, every values file was actually compared and the new
    chart rendered without diagnostics.
    """
    return (
        diffs.fully_compared
        and not diffs.chart_has_diff
        and not diffs.template_diffs_exist
        and not diagnostics.failed
    )


async def dyff_between(dyff: DyffCli, old: Path, new: Path) -> str:
    result = await dyff.between(old, new)
    if not result.ok and not result.stdout.strip():
        print(f"  [WARN] dyff failed for {old.name} vs {new.name}: {result.stderr.strip()}")
    return result.stdout if result.stdout.strip() else ""


async def compare_chart_default_values(ctx: RunContext, dyff: DyffCli) -> str:
    print("[INFO] Comparing chart default values...")
    old_values = ctx.artifact(OLD_VALUES_FILE)
    new_values = ctx.artifact(DEFAULT_VALUES_FILE)
    diff = ""
    if old_values.is_file() and new_values.is_file():
        diff = await dyff_between(dyff, old_values, new_values)
    else:
        print("[INFO] Skipping chart defaults diff - old or new default values missing")
    await write_text(ctx.chart_diff, diff)
    print("[INFO] Chart default values comparison completed")
    return diff


async def compare_template_manifests(ctx: RunContext, dyff: DyffCli,
                                     values_files: List[Path]) -> Tuple[Dict[str, str], Set[str]]:
    """Returns (diff per values name, values names that could not be compared)."""
    print("[INFO] Comparing rendered manifests...")
    diffs = {}
    uncompared = set()
    for values_file in values_files:
        name = values_name(values_file)
        old_manifest = ctx.old_manifest(name)
        new_manifest = ctx.new_manifest(name)
        diff = ""

        print(f"[INFO] Comparing rendered manifests for {values_file.name}...")
        if (await read_text(old_manifest)).strip() and (await read_text(new_manifest)).strip():
            diff = await dyff_between(dyff, old_manifest, new_manifest)
            await write_text(ctx.template_diff(name), diff)
            if diff:
                print(f"[INFO] Found manifest differences for {values_file.name}")
            else:
                print(f"[INFO] No manifest differences for {values_file.name}")
        else:
            print(f"  [WARN] Cannot compare manifests for {values_file.name} - template files missing or empty")
            uncompared.add(name)
        diffs[name] = diff

    print("[INFO] Template manifest comparison completed")
    return diffs, uncompared


async def collect_validation_diagnostics(ctx: RunContext, values_files: List[Path]) -> ValidationDiagnostics:
    diagnostics = ValidationDiagnostics()
    for values_file in values_files:
        name = values_name(values_file)
        diagnostics.helm[values_file.name] = (await read_text(ctx.helm_validation(name))).strip()
        diagnostics.kubectl[values_file.name] = (await read_text(ctx.kubectl_validation(name))).strip()
    return diagnostics


def output_key(values_name: str) -> str:
    """values.prod -> values_prod; dots would read as property access in workflow expressions."""
    return values_name.replace(".", "_")


def comparison_outputs(diffs: DiffSummary, diagnostics: ValidationDiagnostics) -> Dict[str, str]:
    outputs = {}
    for name, diff in diffs.template_diffs.items():
        outputs[f"template_diff_{output_key(name)}_exists"] = bool_output(bool(diff.strip()))
    for file_name in diagnostics.helm:
        outputs[f"validation_{output_key(Path(file_name).stem)}_failed"] = bool_output(diagnostics.failed_for(file_name))
    outputs["template_diffs_exist"] = bool_output(diffs.template_diffs_exist)
    outputs["manifests_compared"] = bool_output(diffs.fully_compared)
    outputs["chart_has_diff"] = bool_output(diffs.chart_has_diff)
    return outputs


# ----------------- PROMPT -----------------


def values_excerpt(index: int, file_name: str, content: Optional[str], dependency: str) -> str:
    """
    One numbered values-file block for the prompt, reduced to the sub-tree
    named after the dependency.
    """
    if content is None:
        return f"\n{index}. CUSTOM VALUES FILE ({file_name}):\n```yaml\n# File not found: {file_name}\n```\n"

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        return (
            f"\n{index}. CUSTOM VALUES FILE ({file_name}):\n```yaml\n"
            f"# Could not parse {file_name}: {e}\n```\n"
        )

    if isinstance(data, dict) and dependency in data:
        body = yaml.safe_dump(data[dependency], default_flow_style=False, sort_keys=False, allow_unicode=True)
        # Scalars are dumped with a document end marker
        if body.endswith("\n...\n"):
            body = body[:-4]
        return (
            f"\n{index}. CUSTOM VALUES FILE ({file_name}) - {dependency} section:\n```yaml\n"
            f"# Only showing {dependency} related configurations:\n{body}```\n"
        )

    return (
        f"\n{index}. CUSTOM VALUES FILE ({file_name}) - NOT RELEVANT:\n```yaml\n"
        f"# No {dependency} configurations found in this file\n"
        f"# This values file does not contain configurations for the changed dependency ({dependency})\n"
        "```\n"
    )


async def build_values_section(values_files: List[Path], dependency: str) -> str:
    if not values_files:
        return "# No custom values files found\n"
    blocks = []
    for index, values_file in enumerate(values_files, start=1):
        content = await read_text(values_file) if values_file.is_file() else None
        blocks.append(values_excerpt(index, values_file.name, content, dependency))
    return "".join(blocks)


def format_validation_errors(diagnostics: ValidationDiagnostics) -> str:
    errors = ""
    for file_name, text in diagnostics.helm.items():
        if text.strip():
            errors += f"\n### Helm Template Validation Error ({file_name}):\n```\n{text.strip()}\n```\n"
    for file_name, text in diagnostics.kubectl.items():
        if text.strip():
            errors += f"\n### kubectl Dry-run Validation Error ({file_name}):\n```\n{text.strip()}\n```\n"
    return errors or "No helm template validation errors detected."


def build_prompt(ctx: RunContext, diffs: DiffSummary, values_section: str, diagnostics: ValidationDiagnostics) -> str:
    dep = ctx.dependency_name
    if not diffs.old_chart_available:
        chart_changes = (
            f"Old '{dep}' chart version {ctx.old_version} could not be downloaded - "
            "chart defaults and rendered manifests were not compared"
        )
    elif diffs.chart_has_diff:
        chart_changes = diffs.chart_diff.rstrip("\n")
    else:
        chart_changes = "No changes detected in chart default values"

    manifest_note = ""
    if diffs.old_chart_available and diffs.uncompared:
        skipped = ", ".join(f"{name}.yaml" for name in sorted(diffs.uncompared))
        manifest_note = (
            f"NOTE: rendered manifests could not be compared for {skipped} because templating failed; "
            "treat the validation errors below as unresolved.\n"
        )

    version_context = f"{ctx.old_version} → {ctx.new_version}"
    if ctx.version_bump != "unknown":
        version_context += f" ({ctx.version_bump} version change)"

    return f"""You are a Helm chart upgrade expert. Analyze the following:

IMPORTANT: This analysis is for the '{dep}' dependency within the '{ctx.chart_name}' chart.
Only focus on configurations related to '{dep}' - ignore any other dependencies in the values files.

1. CHART CHANGES (dyff output between old and new '{dep}' chart default values):
```
{chart_changes}
```
{manifest_note}
2. CUSTOM VALUES FILES (focus only on '{dep}' configurations):
{values_section}
3. VALIDATION ERRORS:
{format_validation_errors(diagnostics)}

VERSION CONTEXT: {version_context}

BREAKING CHANGE RULES:
- ONLY flag as BREAKING if user's custom values will become INVALID
- Removed value paths that user overrides = BREAKING
- Changed value types (string→number) that user overrides = BREAKING
- New REQUIRED values without defaults = BREAKING

NOT BREAKING:
- Version bumps in image tags
- New optional values with defaults
- Added configuration options
- Patch version updates (x.y.Z changes)
- Removed chart defaults that user does NOT override in their values files
- Changes to unused chart features

CRITICAL: Require ACTUAL evidence of user impact, not hypothetical scenarios.
- If user's values files don't reference a removed configuration → NOT breaking
- Don't flag as breaking based on "could be" or "might affect" - only flag when there's direct evidence
- Focus on what the user is actually using in their custom values files

VERSION ANALYSIS:
- If patch version (Z changed): Assume safe unless proven otherwise
- If minor version (Y changed): Check for deprecations
- If major version (X changed): Expect breaking changes

ANALYSIS APPROACH:
1. Check if user's custom values still work with new defaults
2. Verify no required values were added
3. Confirm no used value paths were removed
4. Validate no type changes affect user config

TASK: Analyze the '{dep}' chart upgrade impact by examining chart default changes and custom value overrides.

IGNORE any configurations not related to '{dep}' - they are not relevant to this analysis.

Format your response as:
## AI Analysis Results

### Version Analysis
[Analyze version change type and expected impact level]

### Impact Summary
- BREAKING: X issues found
- WARNING: Y issues found
- INFO: Z issues found

### Chart Changes Analysis
[Analyze what changed in the chart defaults and how it affects custom configurations]

### Values Configuration Analysis
[Analyze custom value overrides and their compatibility with chart changes]

### Helm Template Validation Analysis
[Analyze any validation errors from helm template validation:
- Assess if validation errors indicate breaking changes or configuration issues
- Distinguish between errors that indicate breaking changes vs environment/infrastructure issues
- Provide specific recommendations for resolving validation issues]

### Recommendations
[Overall recommendations for this upgrade, including validation error resolution]

### Final Decision
Based on the analysis above, provide one of these labels:
- LABEL: breaking-changes (if there are breaking changes that require manual intervention)
- LABEL: ready-to-merge (if changes are safe and can be automatically merged)
- LABEL: needs-review (if uncertain or requires manual verification)
"""


# ----------------- INFERENCE -----------------


def get_error_message_for_status(status: int) -> str:
    if status == 429:
        return "AI service temporarily unavailable (rate limit)"
    if status == 413:
        return "AI service unavailable (request too large)"
    if status in (401, 403):
        return "AI service unavailable (authentication error)"
    if status in (500, 502, 503, 504):
        return "AI service temporarily unavailable (server error)"
    return "AI service unavailable"


class RetryAction(enum.Enum):
    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL_FAST = "fail-fast"


def classify_inference_status(status: int, attempt: int) -> Tuple[RetryAction, int]:
    """Map an HTTP status to (action, seconds to wait before the next attempt)."""
    if status == 200:
        return RetryAction.SUCCEED, 0
    if status == 413:
        # Payload size does not change between attempts
        return RetryAction.FAIL_FAST, 0
    if status == 429:
        return RetryAction.RETRY, attempt * 30
    return RetryAction.RETRY, attempt * 10


@dataclass
class RetryOutcome:
    success: bool
    status: int
    payload: Any
    attempts: int


async def retry_with_backoff(attempt_func: Callable[[int], Awaitable[Tuple[int, Any]]],
                             classify: Callable[[int, int], Tuple[RetryAction, int]],
                             max_attempts: int = 3,
                             sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                             describe: Callable[[int], str] = str) -> RetryOutcome:
    """
    Call attempt_func(attempt) until classify() says succeed or fail fast,
    or max_attempts is reached. attempt_func returns (status, payload).
    No wait happens after the final attempt.
    """
    status, payload = 0, None
    for attempt in range(1, max_attempts + 1):
        print(f"[INFO] API attempt {attempt} of {max_attempts}...")
        status, payload = await attempt_func(attempt)
        print(f"[INFO] HTTP Status: {status}")

        action, delay = classify(status, attempt)
        if action is RetryAction.SUCCEED:
            return RetryOutcome(True, status, payload, attempt)

        message = describe(status)
        if action is RetryAction.FAIL_FAST:
            print(f"[ERROR] {message}. Not retrying.")
            return RetryOutcome(False, status, payload, attempt)

        if attempt < max_attempts:
            print(f"[INFO] {message} - waiting {delay} seconds before retry...")
            await sleep(delay)
        else:
            print(f"[ERROR] {message} after {max_attempts} attempts")

    return RetryOutcome(False, status, payload, max_attempts)


def extract_reply_content(body: Optional[str]) -> Optional[str]:
    """choices[0].message.content, or None for anything malformed."""
    if not body:
        return None
    try:
        content = json.loads(body)["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str) or not content.strip():
        return None
    return content


@dataclass
class InferenceResult:
    success: bool
    content: str = ""
    status: int = 0
    attempts: int = 0
    reason: str = ""


class InferenceClient:
    """Chat-completions call with bounded, linear-backoff retries."""

    def __init__(self, endpoint: str, model: str, token: Optional[str], max_attempts: int = 3,
                 timeout: float = 300, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.endpoint = endpoint
        self.model = model
        self.token = token
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.sleep = sleep

    def payload(self, prompt: str) -> dict:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": prompt,
                }
            ],
        }

    async def complete(self, prompt: str, artifacts_dir: Optional[Path] = None) -> InferenceResult:
        print("[INFO] Calling AI API...")
        body = self.payload(prompt)
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if artifacts_dir:
            await write_text(artifacts_dir / PAYLOAD_FILE, json.dumps(body, indent=2))

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async def attempt(number: int) -> Tuple[int, str]:
                try:
                    async with session.post(self.endpoint, json=body, headers=headers) as resp:
                        return resp.status, await resp.text()
                except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                    error_msg = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                    print(f"  [WARN] AI request failed (attempt {number}/{self.max_attempts}): {error_msg}")
                    return 0, ""

            outcome = await retry_with_backoff(
                attempt, classify_inference_status, self.max_attempts, self.sleep, get_error_message_for_status
            )

        if artifacts_dir and outcome.payload:
            await write_text(artifacts_dir / RESPONSE_FILE, outcome.payload)

        if not outcome.success:
            return InferenceResult(
                False, status=outcome.status, attempts=outcome.attempts,
                reason=get_error_message_for_status(outcome.status),
            )

        content = extract_reply_content(outcome.payload)
        if content is None:
            print("[ERROR] AI response format invalid")
            return InferenceResult(False, status=outcome.status, attempts=outcome.attempts, reason="AI response invalid")

        print("[INFO] API call successful")
        return InferenceResult(True, content=content, status=outcome.status, attempts=outcome.attempts)


# ----------------- DECISION -----------------


def classify_reply(text: str) -> Decision:
    """Pick the decision label out of a free-text reply."""
    lines = text.splitlines()
    for decision, pattern in LABEL_PATTERNS:
        if any(pattern.search(line) for line in lines):
            return decision
    return Decision.UNDETERMINED


def fallback_decision(diagnostics: ValidationDiagnostics) -> Decision:
    """Used whenever the inference call gives nothing usable, whatever the reason."""
    return Decision.NEEDS_REVIEW if diagnostics.failed else Decision.SAFE


async def apply_decision_label(ctx: RunContext, github: GitHubCli, decision: Decision, description: str) -> None:
    """Remove every analysis label, then add exactly one."""
    label = decision.label
    if ctx.dry_run:
        print(f"[INFO] Dry run - would apply label: {label}")
        return
    for existing in ANALYSIS_LABELS:
        await github.ensure_label_absent(ctx.pr_number, existing)
    await github.ensure_label_exists(label, description, LABEL_COLORS[label])
    await github.add_label(ctx.pr_number, label)
    print(f"[INFO] Applied label: {label}")


# ----------------- REPORT -----------------


def report_header(ctx: RunContext) -> str:
    bump = f" ({ctx.version_bump})" if ctx.version_bump != "unknown" else ""
    return (
        f"## {ctx.dependency_name} Chart Version Upgrade Analysis\n\n"
        f"**Version Upgrade:** {ctx.old_version} → {ctx.new_version}{bump}\n\n"
    )


def safe_merge_summary(ctx: RunContext) -> str:
    return report_header(ctx) + """### Chart Default Values Changes

**Status:** No changes in chart default values

### Rendered Manifest Changes

**Status:** No changes in rendered manifests

### AI Analysis

**Result:** **SAFE TO MERGE**

No changes detected in chart default values or rendered manifests, indicating this is a safe version bump with no breaking changes. This update can be automatically merged.

**Label Applied:** `ready-to-merge`
"""


def ai_error_analysis(reason: str) -> str:
    return f"""## AI Analysis

**Status:** AI analysis unavailable ({reason})

The automated analysis could not be completed at this time. Please review the changes manually.

**Recommendation:** Review the chart changes and validation results above to determine if this upgrade is safe to merge.
"""


def values_file_details(file_name: str, helm_diagnostic: str, kubectl_diagnostic: str,
                        kubectl_enabled: bool, template_diff: str, compared: bool = True) -> str:
    if kubectl_diagnostic.strip():
        kubectl_text = kubectl_diagnostic.strip()
    elif kubectl_enabled:
        kubectl_text = "✅ kubectl dry-run validation passed"
    else:
        kubectl_text = "kubectl dry-run validation skipped"

    lines = [
        "<details>",
        f"<summary>{file_name} - Manifest Changes and Validation</summary>",
        "",
        "**Validation Results (New Chart):**",
        "",
        "<details>",
        "<summary>Helm Template Validation</summary>",
        "",
        "```",
        helm_diagnostic.strip() or "✅ Helm template validation passed",
        "```",
        "</details>",
        "",
        "<details>",
        "<summary>kubectl Dry-run Validation</summary>",
        "",
        "```",
        kubectl_text,
        "```",
        "</details>",
        "",
    ]
    if template_diff.strip():
        lines += [
            "**Manifest Changes:**",
            "```yaml",
            "# Changes in rendered Kubernetes manifests",
            template_diff.rstrip("\n"),
            "```",
        ]
    elif compared:
        lines.append("**Manifest Changes:** No differences detected")
    else:
        lines.append("**Manifest Changes:** Not compared (old or new manifest missing or empty)")
    lines += ["</details>", "", ""]
    return "\n".join(lines)


def build_summary_report(ctx: RunContext, diffs: DiffSummary, diagnostics: ValidationDiagnostics,
                         values_files: List[Path], ai_analysis: Optional[str], kubectl_enabled: bool = False) -> str:
    report = report_header(ctx) + "### Rendered Manifest Changes\n\n"

    if not diffs.old_chart_available:
        report += "**Status:** Rendered manifests were not compared (old chart version could not be downloaded)\n\n"
    else:
        if diffs.template_diffs_exist:
            report += "**Status:** Rendered manifests have changed\n\n"
        elif not diffs.uncompared:
            report += "**Status:** No changes in rendered manifests\n\n"
        if diffs.uncompared:
            skipped = ", ".join(f"{name}.yaml" for name in sorted(diffs.uncompared))
            report += f"**Status:** Rendered manifests were not compared for {skipped} (template rendering failed)\n\n"

    if diffs.template_diffs_exist or not diffs.fully_compared or diagnostics.failed:
        for values_file in values_files:
            name = values_name(values_file)
            report += values_file_details(
                values_file.name,
                diagnostics.helm.get(values_file.name, ""),
                diagnostics.kubectl.get(values_file.name, ""),
                kubectl_enabled,
                diffs.template_diffs.get(name, ""),
                compared=diffs.compared(name),
            )

    report += "### Chart Default Values Changes\n\n"
    if diffs.chart_has_diff:
        report += (
            "**Status:** Chart defaults have changed\n\n"
            "<details>\n<summary>View Chart Default Changes</summary>\n\n"
            "```yaml\n# Changes in chart default values\n"
            f"{diffs.chart_diff.rstrip()}\n```\n</details>\n"
        )
    elif not diffs.old_chart_available:
        report += "**Status:** Chart defaults were not compared\n"
    else:
        report += "**Status:** No changes in chart default values\n"
    report += "\n"

    if ai_analysis:
        report += ai_analysis.rstrip("\n") + "\n"
    else:
        report += "## AI Analysis\n\nAI analysis was not available for this run.\n"
    return report


async def publish_report(ctx: RunContext, github: GitHubCli, report: str) -> Path:
    """Write diff_summary.md, mirror it to the job summary, post it on the PR."""
    summary = ctx.artifact(SUMMARY_FILE)
    await write_text(summary, report)

    step_summary = os.environ.get("GITHUB_STEP_SUMMARY")
    if step_summary:
        async with aiofiles.open(step_summary, "a", encoding="utf-8") as f:
            await f.write(report + "\n")

    if ctx.dry_run:
        print(f"[INFO] Dry run - PR comment written to {summary}")
        return summary

    print("[INFO] Posting PR comment...")
    await github.comment(ctx.pr_number, summary)
    return summary


# ----------------- PIPELINE -----------------


async def perform_ai_analysis(ctx: RunContext, github: GitHubCli, inference: Any, diffs: DiffSummary,
                              diagnostics: ValidationDiagnostics, values_files: List[Path]) -> Tuple[Decision, str]:
    print("[INFO] Building AI prompt...")
    values_section = await build_values_section(values_files, ctx.dependency_name)
    prompt = build_prompt(ctx, diffs, values_section, diagnostics)
    await write_text(ctx.artifact(PROMPT_FILE), prompt)

    result = await inference.complete(prompt, ctx.working_dir)

    if result.success:
        print("[INFO] AI analysis completed successfully")
        decision = classify_reply(result.content)
        analysis = result.content
        description = AI_LABEL_DESCRIPTIONS[decision]
        if decision is Decision.BREAKING:
            print("[INFO] AI detected breaking changes!")
        elif decision is Decision.SAFE:
            print("[INFO] AI detected no breaking changes - safe to merge")
        else:
            print("[INFO] AI recommends manual review")
    else:
        print(f"[ERROR] AI analysis failed: {result.reason}")
        decision = fallback_decision(diagnostics)
        if decision is Decision.SAFE:
            print("[INFO] AI unavailable but helm template validation passed - applying ready-to-merge label")
            analysis = FALLBACK_NOTE
            description = "Helm validation passed - safe to merge"
        else:
            print("[INFO] AI unavailable and helm template failures detected - requires manual review")
            analysis = ai_error_analysis(f"{result.reason} - helm template failures detected")
            description = "Helm template failures detected - requires manual review"

    await write_text(ctx.artifact(ANALYSIS_FILE), analysis)
    await apply_decision_label(ctx, github, decision, description)
    return decision, analysis


async def analyze(ctx: RunContext, settings: dict, tools: Toolbox, inference: Any) -> Decision:
    """Run every stage after context detection; returns the applied decision."""
    pattern = settings["valuesPattern"]
    validate = bool(settings["helm"]["validate"])
    kubectl_enabled = bool(settings["kubectl"]["validate"])

    archive = await extract_new_chart(ctx)
    set_outputs({"chart_archive": archive.name})

    old_available = await download_old_chart(ctx, tools.helm)
    if not old_available:
        print("  [WARN] Old chart unavailable - defaults and manifests cannot be compared")

    await render_chart(tools.helm, ctx.new_chart_path, "new-release", ctx.new_templates, "new-template",
                       list_values_files(ctx.working_dir, pattern), validate)
    if old_available:
        await render_chart(tools.helm, ctx.old_chart_path, "old-release", ctx.old_templates, "old-template",
                           list_values_files(ctx.working_dir, pattern), validate)
    shutil.rmtree(ctx.old_chart_root, ignore_errors=True)

    if kubectl_enabled:
        await validate_manifests(ctx, tools.kubectl, list_values_files(ctx.working_dir, pattern),
                                 str(settings["kubectl"]["dryRun"]))

    diffs = DiffSummary(old_chart_available=old_available)
    if old_available:
        diffs.chart_diff = await compare_chart_default_values(ctx, tools.dyff)
        diffs.template_diffs, diffs.uncompared = await compare_template_manifests(
            ctx, tools.dyff, list_values_files(ctx.working_dir, pattern)
        )
    diagnostics = await collect_validation_diagnostics(ctx, list_values_files(ctx.working_dir, pattern))
    set_outputs(comparison_outputs(diffs, diagnostics))

    if is_safe_bump(diffs, diagnostics):
        print("[INFO] No chart default or manifest differences detected - this is a safe version bump")
        await apply_decision_label(ctx, tools.github, Decision.SAFE, "Safe to merge - no breaking changes")
        await publish_report(ctx, tools.github, safe_merge_summary(ctx))
        set_outputs({"skip_ai": "true", "breaking_changes": Decision.SAFE.breaking_output, "decision": Decision.SAFE.label})
        return Decision.SAFE

    print("[INFO] Changes detected or comparison incomplete - proceeding with AI analysis")
    set_outputs({"skip_ai": "false"})

    values_files = list_values_files(ctx.working_dir, pattern)
    decision, analysis = await perform_ai_analysis(ctx, tools.github, inference, diffs, diagnostics, values_files)

    print("[INFO] Generating comprehensive summary report...")
    report = build_summary_report(ctx, diffs, diagnostics, values_files, analysis, kubectl_enabled)
    await publish_report(ctx, tools.github, report)
    set_outputs({"breaking_changes": decision.breaking_output, "decision": decision.label})
    return decision


def cleanup_workspace(ctx: RunContext) -> None:
    """Drop extracted chart trees; diff, prompt and report artifacts stay."""
    print("[INFO] Cleaning up workspace...")
    shutil.rmtree(ctx.old_chart_root, ignore_errors=True)
    # Only remove the new chart tree when it came from an archive
    if find_chart_archive(ctx.charts_dir, ctx.dependency_name, ctx.new_version, ctx.chart_name):
        shutil.rmtree(ctx.new_chart_path, ignore_errors=True)


# ----------------- MAIN -----------------


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Analyze a Helm chart dependency version bump")
    parser.add_argument("--chart", default=os.environ.get("CHART_NAME"))
    parser.add_argument("--dependency", default=os.environ.get("DEPENDENCY_NAME"))
    parser.add_argument("--old-version", default=os.environ.get("OLD_VERSION"))
    parser.add_argument("--new-version", default=os.environ.get("NEW_VERSION"))
    parser.add_argument("--pr", default=os.environ.get("PR_NUMBER"))
    parser.add_argument("--charts-root", default=None)
    parser.add_argument("--dry-run", action="store_true", help="Do not comment on or label the PR")
    return parser.parse_args(argv)


async def async_main(argv: Optional[List[str]] = None) -> int:
    """Main async function."""
    start_time = time.time()
    args = parse_args(argv)

    missing = [flag for flag, value in (
        ("--chart", args.chart),
        ("--dependency", args.dependency),
        ("--old-version", args.old_version),
        ("--new-version", args.new_version),
    ) if not value]
    if missing:
        print(f"[ERROR] Missing required inputs: {', '.join(missing)}", file=sys.stderr)
        return 1

    settings = await load_settings(CONFIG_PATH)
    charts_root = Path(args.charts_root or settings["chartsRoot"])

    try:
        ctx = build_context(args.chart, args.dependency, args.old_version, args.new_version,
                            charts_root, pr_number=args.pr, dry_run=args.dry_run)
    except AnalysisError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    set_outputs({"chart_name": ctx.chart_name, "dependency_name": ctx.dependency_name})

    if args.dry_run:
        print("Running in dry-run mode (no PR comment or labels)")

    token = os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")
    if not token:
        print("  [WARN] GH_TOKEN/GITHUB_TOKEN not set, the inference call will be unauthenticated")

    ai = settings["ai"]
    inference = InferenceClient(ai["endpoint"], ai["model"], token, int(ai["maxAttempts"]), float(ai["timeout"]))

    try:
        decision = await analyze(ctx, settings, Toolbox(), inference)
    except AnalysisError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"[ERROR] Unexpected failure: {type(e).__name__}: {e}", file=sys.stderr)
        print(f"[ERROR] Traceback:\n{traceback.format_exc()}", file=sys.stderr)
        return 1
    finally:
        cleanup_workspace(ctx)

    print(f"\n{'='*60}")
    print(f"Decision: {decision.label}")
    print(f"Total time: {time.time() - start_time:.2f}s")
    print(f"{'='*60}")
    return 0


def main():
    """Entry point that runs the async main function."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
