from __future__ import annotations

import re
from pathlib import Path

from shipyard.errors import ReleaseFailed
from shipyard.release.naming import NamingPattern

_SAFE_VALUE = re.compile(r"^[A-Za-z0-9._/@+-]+$")

_SHELL_PLACEHOLDERS = {
    "name": "${NAME}",
    "version": "${VERSION_NUM}",
    "os": "${OS}",
    "arch": "${ARCH}",
    "target": "${OS}-${ARCH}",
    "ext": "${EXT}",
}

_SCRIPT = """\
#!/bin/sh
# Installer for __NAME__ (__REPO__), generated by shipyard from the
# __SOURCE__ naming convention: __TEMPLATE__
set -eu

REPO="__REPO__"
NAME="__NAME__"
VERSION="${VERSION:-__VERSION__}"
DEST="${DEST:-$HOME/.local/bin}"

OS=$(uname -s | tr '[:upper:]' '[:lower:]')
case "$OS" in
  linux*) OS="linux" ;;
  darwin*) OS="darwin" ;;
  mingw*|msys*|cygwin*) OS="windows" ;;
  *) echo "unsupported operating system: $OS" >&2; exit 1 ;;
esac

ARCH=$(uname -m)
case "$ARCH" in
  x86_64|amd64) ARCH="amd64" ;;
  arm64|aarch64) ARCH="arm64" ;;
  *) echo "unsupported architecture: $ARCH" >&2; exit 1 ;;
esac

EXT="tar.gz"
if [ "$OS" = "windows" ]; then
  EXT="zip"
fi

VERSION_NUM="${VERSION#v}"
ASSET="__ASSET__"
BASE_URL="https://github.com/${REPO}/releases/download/${VERSION}"
if [ "$VERSION" = "latest" ]; then
  BASE_URL="https://github.com/${REPO}/releases/latest/download"
fi

TMP=$(mktemp -d)
trap 'rm -rf "$TMP"' EXIT INT TERM

download() {
  if command -v curl >/dev/null 2>&1; then
    curl -fsSL "$1" -o "$2"
  else
    wget -q -O "$2" "$1"
  fi
}

sha256() {
  if command -v sha256sum >/dev/null 2>&1; then
    sha256sum "$1" | cut -d ' ' -f 1
  else
    shasum -a 256 "$1" | cut -d ' ' -f 1
  fi
}

echo "Downloading $ASSET from $BASE_URL" >&2
download "$BASE_URL/$ASSET" "$TMP/$ASSET"
download "$BASE_URL/__CHECKSUMS__" "$TMP/__CHECKSUMS__"

EXPECTED=$(awk -v asset="$ASSET" '$2 == asset { print $1 }' "$TMP/__CHECKSUMS__")
if [ -z "$EXPECTED" ]; then
  echo "no checksum published for $ASSET" >&2
  exit 1
fi
ACTUAL=$(sha256 "$TMP/$ASSET")
if [ "$EXPECTED" != "$ACTUAL" ]; then
  echo "checksum mismatch for $ASSET" >&2
  exit 1
fi

mkdir -p "$TMP/extract"
case "$ASSET" in
  *.zip) unzip -q "$TMP/$ASSET" -d "$TMP/extract" ;;
  *.tar.gz|*.tgz) tar -xzf "$TMP/$ASSET" -C "$TMP/extract" ;;
  *.tar.xz) tar -xJf "$TMP/$ASSET" -C "$TMP/extract" ;;
  *.tar.bz2) tar -xjf "$TMP/$ASSET" -C "$TMP/extract" ;;
  *.tar) tar -xf "$TMP/$ASSET" -C "$TMP/extract" ;;
  *) cp "$TMP/$ASSET" "$TMP/extract/$NAME" ;;
esac

BIN=$(find "$TMP/extract" -type f \\( -name "$NAME" -o -name "$NAME.exe" \\) | head -n 1)
if [ -z "$BIN" ]; then
  echo "$NAME not found in $ASSET" >&2
  exit 1
fi

mkdir -p "$DEST"
cp "$BIN" "$DEST/"
chmod 0755 "$DEST/$(basename "$BIN")"
echo "Installed $NAME $VERSION to $DEST" >&2
"""


def shell_template(template: str) -> str:
    """Translate ``{placeholder}`` names into the installer's shell variables."""
    return re.sub(
        r"\{([a-z]+)\}",
        lambda match: _SHELL_PLACEHOLDERS.get(match.group(1), match.group(0)),
        template,
    )


def _require_safe(label: str, value: str) -> str:
    if not _SAFE_VALUE.match(value):
        raise ReleaseFailed(f"Cannot embed {label} '{value}' in an installer script.")
    return value


def render_installer(
    github_repo: str,
    binary_name: str,
    pattern: NamingPattern,
    *,
    version: str = "latest",
    checksums_file: str = "SHA256SUMS",
) -> str:
    if pattern.template is None:
        raise ReleaseFailed(
            "No naming convention could be inferred from the existing installer; "
            "refusing to generate one."
        )
    asset = shell_template(pattern.template)
    if '"' in asset or "`" in asset or "\\" in asset:
        raise ReleaseFailed(f"Naming template '{pattern.template}' cannot be quoted safely.")
    replacements = {
        "__REPO__": _require_safe("repository", github_repo),
        "__NAME__": _require_safe("binary name", binary_name),
        "__VERSION__": _require_safe("version", version),
        "__CHECKSUMS__": checksums_file,
        "__SOURCE__": pattern.confidence,
        "__TEMPLATE__": pattern.template,
        "__ASSET__": asset,
    }
    script = _SCRIPT
    for marker, value in replacements.items():
        script = script.replace(marker, value)
    return script


def write_installer(path: Path, script: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(script, encoding="utf-8")
    path.chmod(0o755)
    return path
