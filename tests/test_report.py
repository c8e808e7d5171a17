"""Tests for report rendering, settings loading and the gh CLI adapter."""

import asyncio
from importlib.machinery import SourceFileLoader
from importlib.util import module_from_spec, spec_from_loader
from pathlib import Path

import pytest


def load_analyze_chart_upgrade():
    script_path = Path(__file__).parent.parent / ".github" / "scripts" / "analyze-chart-upgrade.py"
    loader = SourceFileLoader("analyze_chart_upgrade", str(script_path))
    spec = spec_from_loader("analyze_chart_upgrade", loader)
    module = module_from_spec(spec)
    loader.exec_module(module)
    return module


analyze = load_analyze_chart_upgrade()
CommandResult = analyze.CommandResult


def make_context(tmp_path):
    return analyze.RunContext("web", "redis", "1.2.3", "2.0.0", tmp_path, pr_number="7")


class FakeRunner:
    """Records commands and answers from a queue of results."""

    def __init__(self, *results):
        self.results = list(results)
        self.commands = []

    async def __call__(self, args, cwd=None):
        self.commands.append(args)
        return self.results.pop(0) if self.results else CommandResult(0)


class TestSummaryReport:
    """Tests for build_summary_report function."""

    def test_header_and_sections_in_order(self, tmp_path):
        diffs = analyze.DiffSummary(chart_diff="auth.enabled removed\n", template_diffs={"values.prod": "kind changed\n"})
        values_files = [tmp_path / "values.prod.yaml"]
        report = analyze.build_summary_report(
            make_context(tmp_path), diffs, analyze.ValidationDiagnostics(), values_files, "## AI Analysis Results\nok",
        )

        assert report.startswith("## redis Chart Version Upgrade Analysis")
        assert "**Version Upgrade:** 1.2.3 → 2.0.0 (major)" in report
        manifests = report.index("### Rendered Manifest Changes")
        defaults = report.index("### Chart Default Values Changes")
        ai = report.index("## AI Analysis Results")
        assert manifests < defaults < ai
        assert "auth.enabled removed" in report
        assert "kind changed" in report

    def test_no_ai_analysis(self, tmp_path):
        report = analyze.build_summary_report(
            make_context(tmp_path), analyze.DiffSummary(chart_diff="x\n"), analyze.ValidationDiagnostics(), [], None,
        )
        assert "AI analysis was not available for this run." in report

    def test_unchanged_manifests_have_no_details(self, tmp_path):
        diffs = analyze.DiffSummary(chart_diff="x\n", template_diffs={"values.prod": ""})
        report = analyze.build_summary_report(
            make_context(tmp_path), diffs, analyze.ValidationDiagnostics(), [tmp_path / "values.prod.yaml"], "ok",
        )
        assert "**Status:** No changes in rendered manifests" in report
        assert "<details>" in report
        assert "values.prod.yaml - Manifest Changes" not in report

    def test_uncompared_manifests_are_not_reported_unchanged(self, tmp_path):
        """A values file whose render failed is listed as not compared, with details."""
        diffs = analyze.DiffSummary(template_diffs={"values.prod": ""}, uncompared={"values.prod"})
        diagnostics = analyze.ValidationDiagnostics(helm={"values.prod.yaml": "Error: nil pointer"})
        report = analyze.build_summary_report(
            make_context(tmp_path), diffs, diagnostics, [tmp_path / "values.prod.yaml"], "ok",
        )
        assert "No changes in rendered manifests" not in report
        assert "**Status:** Rendered manifests were not compared for values.prod.yaml" in report
        assert "values.prod.yaml - Manifest Changes and Validation" in report
        assert "**Manifest Changes:** Not compared" in report
        assert "Error: nil pointer" in report

    def test_partial_comparison_reports_both(self, tmp_path):
        diffs = analyze.DiffSummary(
            template_diffs={"values.prod": "kind changed\n", "values.dev": ""}, uncompared={"values.dev"},
        )
        values_files = [tmp_path / "values.dev.yaml", tmp_path / "values.prod.yaml"]
        report = analyze.build_summary_report(
            make_context(tmp_path), diffs, analyze.ValidationDiagnostics(), values_files, "ok",
        )
        assert "**Status:** Rendered manifests have changed" in report
        assert "were not compared for values.dev.yaml" in report
        assert "kind changed" in report


class TestValuesFileDetails:
    """Tests for values_file_details function."""

    def test_not_compared(self):
        block = analyze.values_file_details("values.prod.yaml", "Error: bad", "", False, "", compared=False)
        assert "**Manifest Changes:** Not compared (old or new manifest missing or empty)" in block
        assert "No differences detected" not in block

    def test_passed_validation(self):
        block = analyze.values_file_details("values.prod.yaml", "", "", False, "")
        assert "✅ Helm template validation passed" in block
        assert "kubectl dry-run validation skipped" in block
        assert "**Manifest Changes:** No differences detected" in block

    def test_failed_validation_and_diff(self):
        block = analyze.values_file_details("values.prod.yaml", "Error: bad", "error: unknown field", True, "spec changed\n")
        assert "Error: bad" in block
        assert "error: unknown field" in block
        assert "spec changed" in block

    def test_kubectl_enabled_and_passing(self):
        block = analyze.values_file_details("values.prod.yaml", "", "", True, "")
        assert "✅ kubectl dry-run validation passed" in block


class TestIsSafeBump:
    """Tests for is_safe_bump function."""

    def test_clean_comparison(self):
        diffs = analyze.DiffSummary(template_diffs={"values.prod": ""})
        diagnostics = analyze.ValidationDiagnostics(helm={"values.prod.yaml": ""}, kubectl={"values.prod.yaml": ""})
        assert analyze.is_safe_bump(diffs, diagnostics) is True

    def test_uncompared_manifest(self):
        """An empty diff from a manifest that was never compared is not a clean bump."""
        diffs = analyze.DiffSummary(template_diffs={"values.prod": ""}, uncompared={"values.prod"})
        assert analyze.is_safe_bump(diffs, analyze.ValidationDiagnostics()) is False

    def test_validation_failure(self):
        diffs = analyze.DiffSummary(template_diffs={"values.prod": ""})
        diagnostics = analyze.ValidationDiagnostics(kubectl={"values.prod.yaml": "error: unknown field"})
        assert analyze.is_safe_bump(diffs, diagnostics) is False

    def test_old_chart_unavailable(self):
        diffs = analyze.DiffSummary(old_chart_available=False)
        assert analyze.is_safe_bump(diffs, analyze.ValidationDiagnostics()) is False

    def test_any_difference(self):
        assert analyze.is_safe_bump(analyze.DiffSummary(chart_diff="x\n"), analyze.ValidationDiagnostics()) is False
        diffs = analyze.DiffSummary(template_diffs={"values.prod": "kind changed\n"})
        assert analyze.is_safe_bump(diffs, analyze.ValidationDiagnostics()) is False


class TestComparisonOutputs:
    """Tests for comparison_outputs and output_key functions."""

    def test_output_key(self):
        assert analyze.output_key("values.prod") == "values_prod"
        assert analyze.output_key("values.eu.prod") == "values_eu_prod"
        assert analyze.output_key("values") == "values"

    def test_keys_have_no_dots(self):
        diffs = analyze.DiffSummary(template_diffs={"values.prod": "kind changed\n", "values.dev": ""})
        diagnostics = analyze.ValidationDiagnostics(helm={"values.prod.yaml": "Error: bad", "values.dev.yaml": ""})

        outputs = analyze.comparison_outputs(diffs, diagnostics)

        assert outputs == {
            "template_diff_values_prod_exists": "true",
            "template_diff_values_dev_exists": "false",
            "validation_values_prod_failed": "true",
            "validation_values_dev_failed": "false",
            "template_diffs_exist": "true",
            "manifests_compared": "true",
            "chart_has_diff": "false",
        }
        assert not any("." in key for key in outputs)

    def test_manifests_compared_false_when_uncompared(self):
        diffs = analyze.DiffSummary(template_diffs={"values.prod": ""}, uncompared={"values.prod"})
        outputs = analyze.comparison_outputs(diffs, analyze.ValidationDiagnostics())
        assert outputs["manifests_compared"] == "false"
        assert outputs["template_diff_values_prod_exists"] == "false"


class TestSafeMergeSummary:
    def test_content(self, tmp_path):
        summary = analyze.safe_merge_summary(make_context(tmp_path))
        assert "**Result:** **SAFE TO MERGE**" in summary
        assert "`ready-to-merge`" in summary


class TestSettings:
    """Tests for merge_settings and load_settings."""

    def test_defaults_without_file(self, tmp_path):
        settings = asyncio.run(analyze.load_settings(tmp_path / "missing.yaml", environ={}))
        assert settings == analyze.DEFAULT_SETTINGS
        assert settings is not analyze.DEFAULT_SETTINGS

    def test_file_overrides_nested_keys(self, tmp_path):
        config = tmp_path / ".chart-analysis.yaml"
        config.write_text("kubectl:\n  validate: true\nai:\n  maxAttempts: 5\n")

        settings = asyncio.run(analyze.load_settings(config, environ={}))

        assert settings["kubectl"] == {"validate": True, "dryRun": "client"}
        assert settings["ai"]["maxAttempts"] == 5
        assert settings["ai"]["model"] == "openai/gpt-4o"

    def test_env_overrides(self, tmp_path):
        settings = asyncio.run(analyze.load_settings(
            tmp_path / "missing.yaml", environ={"AI_MODEL": "openai/gpt-4.1", "AI_ENDPOINT": "http://localhost/x"}
        ))
        assert settings["ai"]["model"] == "openai/gpt-4.1"
        assert settings["ai"]["endpoint"] == "http://localhost/x"

    def test_non_mapping_file_ignored(self, tmp_path):
        config = tmp_path / ".chart-analysis.yaml"
        config.write_text("- just\n- a list\n")
        settings = asyncio.run(analyze.load_settings(config, environ={}))
        assert settings == analyze.DEFAULT_SETTINGS

    def test_defaults_not_mutated(self, tmp_path):
        asyncio.run(analyze.load_settings(tmp_path / "missing.yaml", environ={"AI_MODEL": "other"}))
        assert analyze.DEFAULT_SETTINGS["ai"]["model"] == "openai/gpt-4o"


class TestGitHubCli:
    """Tests for GitHubCli against a recording runner."""

    def test_label_already_exists_is_tolerated(self, capsys):
        runner = FakeRunner(CommandResult(1, "", "label with name \"ready-to-merge\" already exists"))
        asyncio.run(analyze.GitHubCli(runner).ensure_label_exists("ready-to-merge", "Safe to merge", "0e8a16"))

        assert runner.commands[0][:4] == ["gh", "label", "create", "ready-to-merge"]
        assert "[WARN]" not in capsys.readouterr().out

    def test_label_create_other_failure_warns(self, capsys):
        runner = FakeRunner(CommandResult(1, "", "HTTP 403"))
        asyncio.run(analyze.GitHubCli(runner).ensure_label_exists("needs-review", "Requires manual review", "fbca04"))
        assert "[WARN] Could not create label needs-review" in capsys.readouterr().out

    def test_remove_absent_label_is_tolerated(self):
        runner = FakeRunner(CommandResult(1, "", "not found"))
        asyncio.run(analyze.GitHubCli(runner).ensure_label_absent("7", "breaking-changes"))
        assert runner.commands == [["gh", "pr", "edit", "7", "--remove-label", "breaking-changes"]]

    def test_add_label_failure_raises(self):
        runner = FakeRunner(CommandResult(1, "", "no permission"))
        with pytest.raises(analyze.AnalysisError):
            asyncio.run(analyze.GitHubCli(runner).add_label("7", "needs-review"))

    def test_comment_uses_body_file(self, tmp_path):
        runner = FakeRunner()
        body = tmp_path / "diff_summary.md"
        asyncio.run(analyze.GitHubCli(runner).comment("7", body))
        assert runner.commands == [["gh", "pr", "comment", "7", "--body-file", str(body)]]

    def test_without_pr_number(self):
        """gh falls back to the PR of the current branch."""
        runner = FakeRunner()
        asyncio.run(analyze.GitHubCli(runner).add_label(None, "ready-to-merge"))
        assert runner.commands == [["gh", "pr", "edit", "--add-label", "ready-to-merge"]]


class TestApplyDecisionLabel:
    def test_exactly_one_label(self):
        runner = FakeRunner()
        ctx = analyze.RunContext("web", "redis", "1.0.0", "1.0.1", Path("."), pr_number="7")

        asyncio.run(analyze.apply_decision_label(ctx, analyze.GitHubCli(runner), analyze.Decision.UNDETERMINED, "x"))

        removed = [c[-1] for c in runner.commands if "--remove-label" in c]
        added = [c[-1] for c in runner.commands if "--add-label" in c]
        assert sorted(removed) == sorted(analyze.ANALYSIS_LABELS)
        assert added == ["needs-review"]
