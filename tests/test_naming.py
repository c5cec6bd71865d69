from pathlib import Path

import pytest

from shipyard.release.naming import (
    DownloadUrlHeuristic,
    ExplicitVariableHeuristic,
    PatternExtractor,
    extract_pattern,
    generate_dual,
    normalize_pattern,
    parse_workflow_patterns,
    placeholders,
    substitute,
    validate,
)

FIXTURES = Path(__file__).parent / "fixtures" / "naming"


@pytest.mark.parametrize(
    ("fixture", "template", "source"),
    [
        ("simple_install.sh", "mytool-{target}.{ext}", "TAR"),
        ("cass_style_install.sh", "cass-{target}.{ext}", "TAR"),
        ("case_statement.sh", "casetool-{target}.tar.gz", "TAR"),
        ("commented_pattern.sh", "realtool-{target}.tar.gz", "TAR"),
        ("ext_variable.sh", "exttool-{target}.{ext}", "TAR"),
        ("go_style_vars.sh", "gotool-{os}-{arch}.tar.gz", "TAR"),
        ("multiple_patterns.sh", "firsttool-{target}.tar.gz", "TAR"),
        ("name_variable.sh", "{name}-{target}.tar.gz", "TAR"),
        ("uppercase_asset_name.sh", "uppertool-{target}.tar.gz", "ASSET_NAME"),
        ("versioned_install.sh", "mytool-{version}-{os}-{arch}.tar.gz", "asset_name"),
    ],
)
def test_explicit_variable_fixtures(fixture: str, template: str, source: str) -> None:
    pattern = PatternExtractor().extract_file(FIXTURES / fixture)

    assert pattern.template == template
    assert pattern.source == source
    assert pattern.confidence == "explicit-variable"


def test_url_fixture_is_url_derived() -> None:
    pattern = PatternExtractor().extract_file(FIXTURES / "url_pattern_install.sh")

    assert pattern.template == "urltool-{os}-{arch}.tar.gz"
    assert pattern.confidence == "url-derived"
    assert pattern.source == "url"


def test_literal_download_url_is_templated() -> None:
    text = "curl -LO https://github.com/o/r/releases/download/v1.0.0/urltool-linux-amd64.tar.gz\n"

    pattern = extract_pattern(text)

    assert pattern.template == "urltool-{os}-{arch}.tar.gz"
    assert pattern.confidence == "url-derived"


def test_literal_url_with_version_and_x86_64() -> None:
    text = 'URL="https://example.com/dl/tool-v2.0.1-linux-x86_64.tar.gz"\n'

    assert extract_pattern(text).template == "tool-{version}-{os}-{arch}.tar.gz"


def test_source_build_script_has_no_pattern() -> None:
    pattern = PatternExtractor().extract_file(FIXTURES / "no_pattern.sh")

    assert pattern.found is False
    assert pattern.template is None
    assert pattern.confidence == "none"


def test_missing_script_has_no_pattern(tmp_path: Path) -> None:
    assert PatternExtractor().extract_file(tmp_path / "install.sh").confidence == "none"


def test_commented_assignment_wins_over_later_real_one() -> None:
    pattern = PatternExtractor().extract_file(FIXTURES / "commented_assignment.sh")

    assert pattern.template == "legacy-{target}.zip"
    assert pattern.line == 8


def test_command_substitution_is_not_a_template() -> None:
    text = 'TAR=$(basename "$URL")\nTAR="real-${TARGET}.tar.gz"\n'

    pattern = ExplicitVariableHeuristic().match(text)

    assert pattern is not None
    assert pattern.template == "real-{target}.tar.gz"
    assert pattern.line == 2


def test_url_without_platform_words_is_ignored() -> None:
    text = "curl -LO https://example.com/files/source.tar.gz\n"

    assert DownloadUrlHeuristic().match(text) is None


def test_heuristics_run_in_order() -> None:
    text = (
        "curl -LO https://example.com/urltool-linux-amd64.tar.gz\n"
        'TAR="vartool-${TARGET}.tar.gz"\n'
    )

    assert PatternExtractor().extract(text).template == "vartool-{target}.tar.gz"
    assert PatternExtractor((DownloadUrlHeuristic(),)).extract(text).template == (
        "urltool-{os}-{arch}.tar.gz"
    )


def test_normalize_pattern_handles_actions_expressions() -> None:
    assert normalize_pattern("tool-${{ matrix.target }}.zip") == "tool-{target}.zip"
    assert normalize_pattern("${BINARY}-${GOOS}_${UNKNOWN}") == "{name}-{os}_${UNKNOWN}"


def test_placeholders_expand_target() -> None:
    assert placeholders("x-{target}.{ext}") == {"os", "arch", "ext"}


def test_substitute_strips_version_prefix() -> None:
    rendered = substitute(
        "{name}-{version}-{target}.{ext}",
        name="mytool",
        version="v1.2.0",
        os="linux",
        arch="amd64",
    )

    assert rendered == "mytool-1.2.0-linux-amd64.tar.gz"


def test_generate_dual_names() -> None:
    dual = generate_dual("mytool", "v1.2.0", "linux", "amd64")

    assert dual.versioned == "mytool-1.2.0-linux-amd64.tar.gz"
    assert dual.compat == "mytool-linux-amd64.tar.gz"
    assert dual.same is False


def test_generate_dual_uses_zip_on_windows_and_custom_compat() -> None:
    dual = generate_dual("mytool", "1.0.0", "windows", "amd64", compat_template="mytool-{target}")

    assert dual.versioned == "mytool-1.0.0-windows-amd64.zip"
    assert dual.compat == "mytool-windows-amd64.zip"


def test_validate_accepts_equivalent_templates() -> None:
    result = validate("mytool", "mytool-{target}.tar.gz", "mytool-{os}-{arch}.tar.gz")

    assert result.status == "ok"
    assert result.mismatches == []


def test_validate_reports_missing_version_and_name() -> None:
    result = validate("mytool", "mytool-{version}-{target}.tar.gz", "other-{target}.tar.gz")

    assert result.status == "warning"
    assert result.mismatches == ["name", "version"]
    assert len(result.messages) == 2


def test_parse_workflow_patterns(tmp_path: Path) -> None:
    workflow = tmp_path / "release.yml"
    workflow.write_text(
        """
name: release
on:
  push:
    tags: ["v*"]
jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - uses: actions/upload-artifact@v4
        with:
          name: mytool-${{ matrix.target }}.tar.gz
          path: dist/
  publish:
    runs-on: ubuntu-latest
    steps:
      - uses: softprops/action-gh-release@v2
        with:
          files: |
            dist/mytool-${{ matrix.target }}.tar.gz
            dist/SHA256SUMS
""",
        encoding="utf-8",
    )

    assert parse_workflow_patterns(workflow) == ["mytool-{target}.tar.gz", "SHA256SUMS"]
    assert parse_workflow_patterns(tmp_path / "missing.yml") == []
