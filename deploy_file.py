"""
Reading and rewriting Kamal deploy*.yml files.

Only the restricted layout Kamal uses for accessories is understood:

    accessories:
      redis:
        image: redis:7.0.0@sha256:abc...
        host: 10.0.0.1

The rewrite touches the single image line of one accessory and passes every
other line through byte-for-byte.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from image_ref import ImageReference, parse_image_reference, split_image_tag
from registry_cache import atomic_write_text, file_lock
from version_utils import UNKNOWN

logger = logging.getLogger(__name__)

DEPLOY_FILE_GLOB = "deploy*.yml"

ACCESSORIES_RE = re.compile(r'^accessories:\s*(#.*)?$')
TOP_LEVEL_KEY_RE = re.compile(r'^[A-Za-z_]')
# Exactly two spaces, then a key
ACCESSORY_KEY_RE = re.compile(r'^  ([A-Za-z_][\w.-]*)\s*:')
IMAGE_LINE_RE = re.compile(r'^(\s*)image:\s*(.*)$')
TRAILING_COMMENT_RE = re.compile(r'^(.*?)(\s+#.*)?$')


@dataclass
class AccessoryEntry:
    """An accessory found in a deploy file."""
    file: Path
    name: str
    image: str
    current_version: str
    line_number: int

    @property
    def reference(self) -> ImageReference:
        return parse_image_reference(self.image)


def _split_comment(value: str) -> Tuple[str, str]:
    match = TRAILING_COMMENT_RE.match(value)
    return match.group(1).rstrip(), match.group(2) or ''


def _split_quotes(value: str) -> Tuple[str, str]:
    """Return (quote_char, unquoted_value)."""
    if len(value) >= 2 and value[0] in ('"', "'") and value[-1] == value[0]:
        return value[0], value[1:-1]
    return '', value


def find_deploy_files(config_dir: Path) -> List[Path]:
    """deploy*.yml files directly inside config_dir, sorted by name."""
    return sorted(p for p in Path(config_dir).glob(DEPLOY_FILE_GLOB) if p.is_file())


def scan_accessories(path: Path) -> List[AccessoryEntry]:
    """
    Extract (accessory, image, version) entries from a deploy file.

    Args:
        path: Path to a deploy*.yml file

    Returns:
        Entries in file order; the first image line of each accessory wins
    """
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        lines = f.read().splitlines()

    entries = []
    in_accessories = False
    current = None
    seen_image = False

    for number, line in enumerate(lines, 1):
        if ACCESSORIES_RE.match(line):
            in_accessories = True
            continue

        if not in_accessories:
            continue

        # Another top-level key ends the accessories block
        if TOP_LEVEL_KEY_RE.match(line):
            in_accessories = False
            current = None
            continue

        if line.lstrip().startswith('#'):
            continue

        key_match = ACCESSORY_KEY_RE.match(line)
        if key_match:
            current = key_match.group(1)
            seen_image = False
            continue

        image_match = IMAGE_LINE_RE.match(line)
        if not image_match or len(image_match.group(1)) <= 2:
            continue

        if current is None:
            logger.warning(f"{path.name}:{number}: image line outside of an accessory, ignoring")
            continue
        if seen_image:
            continue

        value, _ = _split_comment(image_match.group(2))
        _, value = _split_quotes(value)
        if not value:
            logger.warning(f"{path.name}:{number}: accessory '{current}' has an empty image")
            continue

        image, version = split_image_tag(value)
        entries.append(AccessoryEntry(
            file=path,
            name=current,
            image=image,
            current_version=version,
            line_number=number,
        ))
        seen_image = True

    return entries


def render_image_line(indent: str, image: str, version: str,
                      digest: Optional[str] = None, quote: str = '') -> str:
    """Build '<indent>image: name:version[@sha256:digest]' (no line ending)."""
    value = f"{image}:{version}"
    if digest and digest != UNKNOWN:
        value += f"@sha256:{digest}"
    return f"{indent}image: {quote}{value}{quote}"


def update_accessory_image(path: Union[str, Path], accessory: str, new_version: str,
                           digest: Optional[str] = None) -> bool:
    """
    Point one accessory's image at a new version (and digest).

    Args:
        path: Deploy file to rewrite
        accessory: Accessory name as declared under 'accessories:'
        new_version: Tag to write
        digest: Hex digest to pin, or None/'unknown' to omit it

    Returns:
        True if the image line was found, False if the file was left untouched
    """
    path = Path(path)
    if not path.is_file():
        logger.error(f"Deploy file not found: {path}")
        return False

    header_re = re.compile(r'^  ' + re.escape(accessory) + r':\s*$')

    with file_lock(path):
        with open(path, 'r', encoding='utf-8', newline='') as f:
            original = f.read()

        output = []
        in_target = False
        updated = False

        for line in original.splitlines(keepends=True):
            if updated:
                output.append(line)
                continue

            body = line.rstrip('\r\n')
            eol = line[len(body):]

            if header_re.match(body):
                in_target = True
                output.append(line)
                continue

            if in_target and (TOP_LEVEL_KEY_RE.match(body) or ACCESSORY_KEY_RE.match(body)):
                in_target = False

            if in_target:
                image_match = IMAGE_LINE_RE.match(body)
                if image_match:
                    indent = image_match.group(1)
                    value, comment = _split_comment(image_match.group(2))
                    quote, value = _split_quotes(value)
                    image, _ = split_image_tag(value)
                    new_line = render_image_line(indent, image, new_version, digest, quote)
                    output.append(new_line + comment + eol)
                    updated = True
                    in_target = False
                    continue

            output.append(line)

        if not updated:
            logger.error(f"Could not update {accessory} in {path}: no image line found")
            return False

        content = ''.join(output)
        if content == original:
            logger.info(f"{path.name}: {accessory} already at {new_version}")
            return True

        atomic_write_text(path, content)

    logger.info(f"Updated {path.name}: {accessory} -> {new_version}")
    return True
