"""Tests for the command-line interface."""

import json

import pytest
from click.testing import CliRunner

from story_graph.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def domain_file(tmp_path):
    path = tmp_path / "domain.json"
    path.write_text(
        json.dumps(
            {
                "stories": [{"id": "s1", "title": "The Rift", "characters": ["c1", "c2"]}],
                "characters": [{"id": "c1", "name": "Kara"}, {"id": "c9"}],
            }
        ),
        encoding="utf-8",
    )
    return path


def write_states(tmp_path, levels):
    path = tmp_path / "states.json"
    states = [
        {"story_id": "s1", "chapter_number": i + 1, "state": {"characters": {"c1": {"character_id": "c1", "level": lvl}}}}
        for i, lvl in enumerate(levels)
    ]
    path.write_text(json.dumps({"snapshots": states}), encoding="utf-8")
    return path


class TestCommands:
    def test_status(self, runner):
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "Story Graph Status" in result.output
        assert "monotonic-level" in result.output

    def test_bootstrap_writes_state(self, runner, domain_file, tmp_path):
        out = tmp_path / "state.json"
        result = runner.invoke(main, ["bootstrap", str(domain_file), "-o", str(out)])

        assert result.exit_code == 0
        assert "Loaded 2 entities" in result.output
        assert "Skipped 1 invalid records" in result.output
        assert json.loads(out.read_text(encoding="utf-8"))["version"] == 1

    def test_search(self, runner, domain_file):
        result = runner.invoke(main, ["search", str(domain_file), "kara"])
        assert result.exit_code == 0
        assert "Kara" in result.output

    def test_search_type_filter(self, runner, domain_file):
        result = runner.invoke(main, ["search", str(domain_file), "rift", "-t", "story"])
        assert result.exit_code == 0
        assert "The Rift" in result.output

    def test_search_rejects_unknown_type(self, runner, domain_file):
        result = runner.invoke(main, ["search", str(domain_file), "kara", "-t", "bogus"])
        assert result.exit_code == 2
        assert "bogus" in result.output

    def test_search_without_hits(self, runner, domain_file):
        result = runner.invoke(main, ["search", str(domain_file), "dragon"])
        assert "No entities match" in result.output

    def test_related(self, runner, domain_file):
        result = runner.invoke(main, ["related", str(domain_file), "s1"])
        assert result.exit_code == 0
        assert "The Rift" in result.output
        assert "participates" in result.output

    def test_timeline_active_view(self, runner, domain_file):
        result = runner.invoke(main, ["timeline", str(domain_file)])
        assert result.exit_code == 0
        assert "Story Timeline" in result.output
        assert "No events" in result.output

    def test_check_reports_findings(self, runner, tmp_path):
        out = tmp_path / "checked.json"
        result = runner.invoke(main, ["check", str(write_states(tmp_path, [5, 4])), "-o", str(out)])

        assert result.exit_code == 0
        assert "Continuity Findings" in result.output
        checked = json.loads(out.read_text(encoding="utf-8"))
        latest = checked["snapshots"]["s1"][-1]
        assert latest["consistency_checks"][0]["rule_id"] == "monotonic-level"

    def test_check_counts_chapters_with_errors(self, runner, tmp_path):
        result = runner.invoke(main, ["check", str(write_states(tmp_path, [5, 4, 3]))])
        assert result.exit_code == 0
        assert "2 chapters with errors" in result.output

    def test_check_rejects_repeated_chapter(self, runner, tmp_path):
        path = write_states(tmp_path, [5, 6])
        data = json.loads(path.read_text(encoding="utf-8"))
        data["snapshots"].append(dict(data["snapshots"][1]))
        path.write_text(json.dumps(data), encoding="utf-8")

        result = runner.invoke(main, ["check", str(path)])
        assert result.exit_code == 1
        assert "Invalid snapshots" in result.output
        assert "does not follow chapter 2" in result.output

    def test_check_rejects_malformed_snapshot(self, runner, tmp_path):
        path = tmp_path / "states.json"
        path.write_text(json.dumps([{"story_id": "s1", "chapter_number": "two"}]), encoding="utf-8")

        result = runner.invoke(main, ["check", str(path)])
        assert result.exit_code == 1
        assert "Invalid snapshots" in result.output

    def test_check_clean_states(self, runner, tmp_path):
        result = runner.invoke(main, ["check", str(write_states(tmp_path, [1, 2, 3]))])
        assert "No continuity problems found" in result.output

    def test_validate(self, runner, domain_file):
        result = runner.invoke(main, ["validate", str(domain_file)])
        assert result.exit_code == 0
        assert "1 issues found" in result.output
