import unittest

from clens.models import FileMapEntry, FileMapResult
from clens.plan_drift import (
    compute_plan_drift,
    detect_spec_ref,
    extract_actual_files,
    is_valid_file_path,
    parse_spec_expected_files,
)


def _file_map(*paths: str) -> FileMapResult:
    return FileMapResult(files=[FileMapEntry(file_path=p, edits=1) for p in paths])


class SpecParsingTests(unittest.TestCase):
    def test_paths_are_deduplicated_across_rules(self) -> None:
        spec = "## Files\n- `src/a.ts`\n- `src/a.ts`\nCreate: src/a.ts"
        self.assertEqual(parse_spec_expected_files(spec), ["src/a.ts"])

    def test_bullets_only_count_inside_files_sections(self) -> None:
        spec = "\n".join([
            "# Overview",
            "- notes.md",
            "## Relevant Files",
            "- **src/server.py**",
            "- src/client.py - the client",
            "## Steps",
            "- docs/guide.md",
        ])

        self.assertEqual(parse_spec_expected_files(spec), ["src/client.py", "src/server.py"])

    def test_code_block_table_and_inline_paths(self) -> None:
        spec = "\n".join([
            "Update `lib/util.py` to add a helper.",
            "Run `npm run build/x.js` afterwards.",
            "| File | Purpose |",
            "| `src/t.py` | new module |",
            "```",
            "./src/x.py",
            "const a = 1",
            "// comment.js",
            "```",
        ])

        self.assertEqual(parse_spec_expected_files(spec), ["lib/util.py", "src/t.py", "src/x.py"])

    def test_frontmatter_files_and_deliverables(self) -> None:
        spec = "---\nfiles:\n  - src/f.py\ndeliverables:\n  - path: src/g.py\n---\n# Plan\nNothing else.\n"
        self.assertEqual(parse_spec_expected_files(spec), ["src/f.py", "src/g.py"])

    def test_malformed_frontmatter_is_ignored(self) -> None:
        spec = "---\nfiles: [unclosed\n---\nModify: src/h.py\n"
        self.assertEqual(parse_spec_expected_files(spec), ["src/h.py"])

    def test_frontmatter_entries_need_a_directory_and_extension(self) -> None:
        spec = "---\nfiles:\n  - README.md\n  - a long description\n  - src/ok.py\n---\n# Plan\n"
        self.assertEqual(parse_spec_expected_files(spec), ["src/ok.py"])

    def test_text_between_leading_rules_is_kept_as_body(self) -> None:
        unparseable = "---\nNotes: [see `src/inner.py`\n---\nModify: src/h.py\n"
        prose = "---\nSee `src/prose.py` for details.\n---\n"

        self.assertEqual(parse_spec_expected_files(unparseable), ["src/h.py", "src/inner.py"])
        self.assertEqual(parse_spec_expected_files(prose), ["src/prose.py"])

    def test_file_path_predicate(self) -> None:
        self.assertTrue(is_valid_file_path("src/a.ts"))
        self.assertFalse(is_valid_file_path("README.md"))
        self.assertFalse(is_valid_file_path("src/run(args).py"))
        self.assertFalse(is_valid_file_path("git add src/a.ts"))
        self.assertFalse(is_valid_file_path("src/no_extension"))


class PlanDriftTests(unittest.TestCase):
    def test_exact_match_has_no_drift(self) -> None:
        report = compute_plan_drift("specs/p.md", "## Files\n- `src/a.ts`\n- `src/b.ts`", [_file_map("src/a.ts", "src/b.ts")])

        self.assertEqual(report.drift_score, 0)
        self.assertEqual(report.unexpected_files, [])
        self.assertEqual(report.missing_files, [])

    def test_empty_spec_with_one_actual_file_is_full_drift(self) -> None:
        report = compute_plan_drift("specs/p.md", "", [_file_map("src/a.ts")])

        self.assertEqual(report.drift_score, 1)
        self.assertEqual(report.unexpected_files, ["src/a.ts"])

    def test_absolute_paths_are_made_project_relative(self) -> None:
        report = compute_plan_drift(
            "specs/p.md",
            "## Files\n- `src/a.ts`\n- `src/b.ts`",
            [_file_map("/proj/src/a.ts")],
            project_dir="/proj",
        )

        self.assertEqual(report.actual_files, ["src/a.ts"])
        self.assertEqual(report.missing_files, ["src/b.ts"])
        self.assertEqual(report.drift_score, 0.5)

    def test_read_only_files_are_not_actual(self) -> None:
        maps = [FileMapResult(files=[FileMapEntry(file_path="src/r.py", reads=3), FileMapEntry(file_path="src/w.py", writes=1)])]
        self.assertEqual(extract_actual_files(maps), ["src/w.py"])


class SpecRefTests(unittest.TestCase):
    def test_first_build_reference_wins(self) -> None:
        prompts = ["look around", "/build specs/feature.md please", "/build docs/specs/other.md"]
        self.assertEqual(detect_spec_ref(prompts), "specs/feature.md")

    def test_no_reference(self) -> None:
        self.assertIsNone(detect_spec_ref(["/plan something"]))


if __name__ == "__main__":
    unittest.main()
