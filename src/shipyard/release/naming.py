"""Artifact naming convention detection.

The extractor runs an ordered list of independent heuristics over an installer script
and keeps the first one that produces a template. Each heuristic is deliberately
simple and separately testable.

Known limitation: the explicit-variable scan works on raw text and does not strip shell
comments, so a commented-out ``TAR=...`` line that appears before the real assignment
wins. ``tests/fixtures/naming/commented_assignment.sh`` pins this behavior.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml

Confidence = Literal["explicit-variable", "url-derived", "none"]

ASSET_NAME_VARIABLES = ("TAR", "ARCHIVE", "ARCHIVE_NAME", "ASSET_NAME", "ASSET", "asset_name")

ARCHIVE_EXTENSIONS = (".tar.gz", ".tar.xz", ".tar.bz2", ".tar.zst", ".tgz", ".zip", ".tar")

PLACEHOLDER_ALIASES = {
    "TARGET": "target",
    "PLATFORM": "target",
    "GOOS": "os",
    "OS": "os",
    "GOARCH": "arch",
    "ARCH": "arch",
    "NAME": "name",
    "TOOL": "name",
    "APP": "name",
    "BINARY": "name",
    "BIN": "name",
    "VERSION": "version",
    "TAG": "version",
    "REF_NAME": "version",
    "EXT": "ext",
}

_SHELL_VARIABLE = re.compile(
    r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?:[:?+\-=][^}]*)?\}|\$([A-Za-z_][A-Za-z0-9_]*)"
)
_ACTIONS_EXPRESSION = re.compile(r"\$\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_PLACEHOLDER = re.compile(r"\{([a-z]+)\}")
_OS_WORD = re.compile(r"(?<![A-Za-z0-9])(?:linux|darwin|macos|windows)(?![A-Za-z0-9])", re.I)
_ARCH_WORD = re.compile(r"(?<![A-Za-z0-9])(?:x86_64|aarch64|amd64|arm64)(?![A-Za-z0-9])", re.I)
_VERSION_WORD = re.compile(r"(?<![A-Za-z0-9.])v?\d+\.\d+\.\d+(?![A-Za-z0-9.])")
_URL = re.compile(r"https?://[^\s\"'<>|;)]+")


@dataclass(slots=True)
class NamingPattern:
    template: str | None
    source: str
    confidence: Confidence
    line: int | None = None

    @property
    def found(self) -> bool:
        return self.template is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "template": self.template,
            "source": self.source,
            "confidence": self.confidence,
            "line": self.line,
        }


def no_pattern() -> NamingPattern:
    return NamingPattern(template=None, source="none", confidence="none")


def _alias(variable: str) -> str | None:
    return PLACEHOLDER_ALIASES.get(variable.upper())


def normalize_pattern(text: str) -> str:
    """Rewrite shell and Actions variables into ``{placeholder}`` form.

    Variables without a known meaning are left untouched.
    """

    def _shell(match: re.Match[str]) -> str:
        variable = match.group(1) or match.group(2)
        alias = _alias(variable)
        return f"{{{alias}}}" if alias else match.group(0)

    def _actions(match: re.Match[str]) -> str:
        alias = _alias(match.group(1).rsplit(".", 1)[-1])
        return f"{{{alias}}}" if alias else match.group(0)

    return _SHELL_VARIABLE.sub(_shell, _ACTIONS_EXPRESSION.sub(_actions, text))


def split_extension(filename: str) -> tuple[str, str]:
    lowered = filename.lower()
    for extension in ARCHIVE_EXTENSIONS:
        if lowered.endswith(extension):
            return filename[: -len(extension)], filename[-len(extension):]
    if filename.endswith(".{ext}"):
        return filename[: -len(".{ext}")], ".{ext}"
    return filename, ""


def placeholders(template: str) -> set[str]:
    found = set(_PLACEHOLDER.findall(template))
    if "target" in found:
        found.discard("target")
        found.update({"os", "arch"})
    return found


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


class NamingHeuristic(ABC):
    name: str = ""
    confidence: Confidence = "none"

    @abstractmethod
    def match(self, text: str) -> NamingPattern | None:
        """Return a pattern when this heuristic recognizes ``text``."""


class ExplicitVariableHeuristic(NamingHeuristic):
    """First assignment to a recognized asset-name variable, anywhere in the text."""

    name = "explicit-variable"
    confidence: Confidence = "explicit-variable"

    def __init__(self, variables: tuple[str, ...] = ASSET_NAME_VARIABLES) -> None:
        self.variables = variables
        names = "|".join(re.escape(variable) for variable in variables)
        self._assignment = re.compile(
            rf"(?<![A-Za-z0-9_])({names})=(\"[^\"\n]*\"|'[^'\n]*'|[^\s;]+)"
        )

    def match(self, text: str) -> NamingPattern | None:
        for match in self._assignment.finditer(text):
            value = _unquote(match.group(2))
            if not value or value.startswith("$("):
                continue
            return NamingPattern(
                template=normalize_pattern(value),
                source=match.group(1),
                confidence=self.confidence,
                line=text.count("\n", 0, match.start()) + 1,
            )
        return None


class DownloadUrlHeuristic(NamingHeuristic):
    """Derive the template from the last path segment of a download URL."""

    name = "url"
    confidence: Confidence = "url-derived"

    @staticmethod
    def _template_from_segment(segment: str) -> str | None:
        stem, extension = split_extension(segment)
        if not extension:
            return None
        template = normalize_pattern(stem)
        template = _OS_WORD.sub("{os}", template)
        template = _ARCH_WORD.sub("{arch}", template)
        template = _VERSION_WORD.sub("{version}", template)
        if not placeholders(template) & {"os", "arch"}:
            return None
        return template + extension

    def match(self, text: str) -> NamingPattern | None:
        for match in _URL.finditer(text):
            segment = match.group(0).rstrip("/").rsplit("/", 1)[-1]
            template = self._template_from_segment(segment)
            if template is None:
                continue
            return NamingPattern(
                template=template,
                source=self.name,
                confidence=self.confidence,
                line=text.count("\n", 0, match.start()) + 1,
            )
        return None


DEFAULT_HEURISTICS: tuple[NamingHeuristic, ...] = (
    ExplicitVariableHeuristic(),
    DownloadUrlHeuristic(),
)


class PatternExtractor:
    def __init__(self, heuristics: tuple[NamingHeuristic, ...] = DEFAULT_HEURISTICS) -> None:
        self.heuristics = heuristics

    def extract(self, text: str) -> NamingPattern:
        for heuristic in self.heuristics:
            pattern = heuristic.match(text)
            if pattern is not None:
                return pattern
        return no_pattern()

    def extract_file(self, path: Path) -> NamingPattern:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return no_pattern()
        return self.extract(text)


def extract_pattern(text: str) -> NamingPattern:
    return PatternExtractor().extract(text)


def substitute(
    template: str,
    *,
    name: str,
    version: str,
    os: str,
    arch: str,
    ext: str = "tar.gz",
) -> str:
    values = {
        "name": name,
        "version": version.removeprefix("v"),
        "os": os,
        "arch": arch,
        "target": f"{os}-{arch}",
        "ext": ext,
    }
    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def default_extension(os: str) -> str:
    return "zip" if os == "windows" else "tar.gz"


@dataclass(slots=True)
class DualName:
    versioned: str
    compat: str

    @property
    def same(self) -> bool:
        return self.versioned == self.compat

    def to_dict(self) -> dict[str, Any]:
        return {"versioned": self.versioned, "compat": self.compat, "same": self.same}


VERSIONED_TEMPLATE = "{name}-{version}-{os}-{arch}.{ext}"
COMPAT_TEMPLATE = "{name}-{os}-{arch}.{ext}"


def generate_dual(
    name: str,
    version: str,
    os: str,
    arch: str,
    ext: str | None = None,
    compat_template: str | None = None,
) -> DualName:
    """Return the versioned asset name and the name existing installers download."""
    ext = ext or default_extension(os)
    values = {"name": name, "version": version, "os": os, "arch": arch, "ext": ext}
    compat = substitute(compat_template or COMPAT_TEMPLATE, **values)
    if not split_extension(compat)[1]:
        compat = f"{compat}.{ext}"
    return DualName(versioned=substitute(VERSIONED_TEMPLATE, **values), compat=compat)


@dataclass(slots=True)
class NamingValidation:
    status: Literal["ok", "warning"]
    mismatches: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "mismatches": list(self.mismatches),
            "messages": list(self.messages),
        }


def validate(
    name: str,
    expected: str,
    actual: str,
    workflow_templates: list[str] | tuple[str, ...] = (),
) -> NamingValidation:
    """Compare the placeholders of two naming templates and any workflow-declared names."""
    mismatches: set[str] = set()
    messages: list[str] = []
    expected_keys = placeholders(expected)
    compared = [("installer", actual), *(("workflow", item) for item in workflow_templates)]
    for label, template in compared:
        keys = placeholders(template)
        difference = expected_keys ^ keys
        if difference:
            mismatches.update(difference)
            messages.append(
                f"{label} pattern '{template}' differs from '{expected}' on: "
                + ", ".join(sorted(difference))
            )
    for template in (expected, actual):
        if "{name}" not in template and name not in template:
            mismatches.add("name")
            messages.append(f"pattern '{template}' does not contain the tool name '{name}'")
    return NamingValidation(
        status="warning" if mismatches else "ok",
        mismatches=sorted(mismatches),
        messages=messages,
    )


def _release_files(step: dict[str, Any]) -> list[str]:
    with_block = step.get("with")
    if not isinstance(with_block, dict):
        return []
    files = with_block.get("files")
    if not files:
        return []
    return [line.strip() for line in str(files).splitlines() if line.strip()]


def parse_workflow_patterns(path: Path) -> list[str]:
    """Collect normalized asset names declared by a release workflow.

    Upload-artifact ``name`` values and release ``files`` entries are reported in file
    order without duplicates. A missing workflow yields an empty list.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    if not isinstance(data, dict) or not isinstance(data.get("jobs"), dict):
        return []

    found: list[str] = []
    for job in data["jobs"].values():
        if not isinstance(job, dict):
            continue
        for step in job.get("steps") or []:
            if not isinstance(step, dict):
                continue
            uses = str(step.get("uses") or "")
            candidates: list[str] = []
            if uses.startswith("actions/upload-artifact"):
                with_block = step.get("with") if isinstance(step.get("with"), dict) else {}
                if with_block.get("name"):
                    candidates.append(str(with_block["name"]))
            elif "release" in uses:
                candidates.extend(item.rsplit("/", 1)[-1] for item in _release_files(step))
            for candidate in candidates:
                normalized = normalize_pattern(candidate)
                if normalized not in found:
                    found.append(normalized)
    return found
