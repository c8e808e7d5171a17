#!/usr/bin/env python
"""
Detect which chart a dependency-update PR touched and which of its
dependencies changed version, then publish the result as step outputs
for the analysis step.
"""
import argparse
import re
import os
import subprocess
import sys
from pathlib import Path
from typing import Any

import yaml
from packaging.version import Version, InvalidVersion

CHARTS_ROOT = "k8s/charts"

PATTERN_SIMPLE = re.compile(r'^v?(\d+\.\d+\.\d+)$')
PATTERN_PRERELEASE = re.compile(r'^v?(\d+\.\d+\.\d+)-([0-9A-Za-z.-]+)$')


class DetectionError(Exception):
    """Raised when the PR does not look like a chart dependency bump."""


def load_yaml_text(text: str) -> dict:
    """Parse a YAML document, treating empty or non-mapping content as {}."""
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}


def run_git(*args: str) -> str:
    result = subprocess.run(["git", *args], capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise DetectionError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
    return result.stdout


def find_changed_charts(paths: list[str], charts_root: str = CHARTS_ROOT) -> list[str]:
    """
    Return the sorted, unique chart names touched by a list of changed paths.

    Only paths below <charts_root>/<chart>/ count; files sitting directly in
    charts_root are ignored.
    """
    prefix = charts_root.rstrip("/") + "/"
    charts = set()
    for path in paths:
        path = path.strip()
        if not path.startswith(prefix):
            continue
        parts = path[len(prefix):].split("/")
        if len(parts) > 1 and parts[0]:
            charts.add(parts[0])
    return sorted(charts)


def dependency_versions(chart: dict) -> dict[str, str]:
    """Map dependency name -> version string, in declared order."""
    versions = {}
    dependencies = chart.get("dependencies")
    if not isinstance(dependencies, list):
        return versions
    for dep in dependencies:
        if not isinstance(dep, dict) or not dep.get("name"):
            continue
        version = dep.get("version")
        versions[dep["name"]] = "" if version is None else str(version)
    return versions


def find_dependency_change(old_chart: dict, new_chart: dict) -> tuple[str, str, str] | None:
    """
    Find the first dependency (in new Chart.yaml order) whose version differs.

    Returns (name, old_version, new_version) or None. Dependencies that only
    exist in the new chart are additions, not bumps, and are skipped.
    """
    old_versions = dependency_versions(old_chart)
    for name, new_version in dependency_versions(new_chart).items():
        old_version = old_versions.get(name)
        print(f"[DEBUG] Checking {name}: {old_version} → {new_version}")
        if old_version is None:
            print(f"  [INFO] {name} is a new dependency, not a version bump")
            continue
        if new_version and old_version and old_version != new_version:
            return name, old_version, new_version
    return None


def normalize_version_string(tag: str) -> str:
    """
    Normalize a chart version to something packaging can parse.

    Same rules as analyze-chart-upgrade.py so both steps agree on the bump:
        v1.2.3 -> 1.2.3
        1.2.3-rc.1 -> 1.2.3rc1
        1.2.3-alpha.beta -> 1.2.3
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


def write_outputs(outputs: dict[str, Any]) -> None:
    """Append key=value pairs to $GITHUB_OUTPUT, or print them when run locally."""
    output_path = os.environ.get("GITHUB_OUTPUT")
    lines = [f"{key}={value}" for key, value in outputs.items()]
    if not output_path:
        for line in lines:
            print(f"[OUTPUT] {line}")
        return
    with open(output_path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")


def detect(base_sha: str, head_sha: str, charts_root: str = CHARTS_ROOT) -> dict[str, str]:
    print("[INFO] Detecting changed chart from PR files...")
    changed = run_git("diff", "--name-only", f"{base_sha}..{head_sha}").splitlines()
    charts = find_changed_charts(changed, charts_root)
    if not charts:
        raise DetectionError("No chart changes detected")
    if len(charts) > 1:
        print(f"  [WARN] Multiple charts changed ({', '.join(charts)}), processing {charts[0]} only")
    chart_name = charts[0]
    print(f"[INFO] Processing chart: {chart_name}")

    print("[INFO] Extracting dependency versions from git diff...")
    chart_file = f"{charts_root}/{chart_name}/Chart.yaml"
    old_chart = load_yaml_text(run_git("show", f"{base_sha}:{chart_file}"))
    new_path = Path(chart_file)
    if not new_path.exists():
        raise DetectionError(f"Chart.yaml not found: {new_path}")
    new_chart = load_yaml_text(new_path.read_text(encoding="utf-8"))

    change = find_dependency_change(old_chart, new_chart)
    if change is None:
        raise DetectionError("No dependency version changes detected in Chart.yaml")
    dependency_name, old_version, new_version = change
    bump = classify_version_bump(old_version, new_version)
    print(f"[INFO] Found version change: {dependency_name} ({old_version} → {new_version}, {bump})")

    return {
        "chart_name": chart_name,
        "dependency_name": dependency_name,
        "old_version": old_version,
        "new_version": new_version,
        "version_bump": bump,
    }


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--base", default=os.environ.get("BASE_SHA"), help="PR base commit")
    parser.add_argument("--head", default=os.environ.get("HEAD_SHA"), help="PR head commit")
    parser.add_argument("--charts-root", default=CHARTS_ROOT)
    args = parser.parse_args()

    if not args.base or not args.head:
        print("[ERROR] Base and head commits are required (--base/--head or BASE_SHA/HEAD_SHA)", file=sys.stderr)
        return 1

    try:
        outputs = detect(args.base, args.head, args.charts_root)
    except DetectionError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    write_outputs(outputs)
    return 0


if __name__ == "__main__":
    sys.exit(main())
