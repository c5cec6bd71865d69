from shipyard.release.consolidator import ArtifactConsolidator, ReleaseManifest, sha256_file
from shipyard.release.installer import render_installer, write_installer
from shipyard.release.naming import (
    NamingPattern,
    PatternExtractor,
    extract_pattern,
    generate_dual,
    normalize_pattern,
    parse_workflow_patterns,
    substitute,
    validate,
)

__all__ = [
    "ArtifactConsolidator",
    "NamingPattern",
    "PatternExtractor",
    "ReleaseManifest",
    "extract_pattern",
    "generate_dual",
    "normalize_pattern",
    "parse_workflow_patterns",
    "render_installer",
    "sha256_file",
    "substitute",
    "validate",
    "write_installer",
]
