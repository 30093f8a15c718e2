"""Decoder for ``nvidia-smi --query`` text output.

The tool prints an indentation-based hierarchy that is *almost* YAML. A
single forward pass rewrites the lines that are not (see ``rewrite_lines``),
then the result is loaded as YAML and mapped onto :class:`Document`. If the
full decode fails, only the header fields are salvaged.

ref. https://developer.nvidia.com/system-management-interface
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import yaml

from nvdiag._errors import DecodeError
from nvdiag._smi_types import DeviceRecord, Document, _text

logger = logging.getLogger("nvdiag.smi.decode")

# e.g. "GPU 00000000:53:00.0"
DEVICE_BLOCK_PREFIX = "GPU 00000"

_BANNER_MARKERS = ("===", "NVSMI LOG")

# keys whose children the tool indents one level too deep
_DENEST_KEYS = ("HW Slowdown", "HW Thermal Slowdown")
_DENEST_PROCESS_KEYS = ("Process ID", "Process Type", "Process Name")

_DEVICE_KEY_RE = re.compile(r"^GPU\d+$")

_HEADER_KEYS = ("Timestamp", "Driver Version", "CUDA Version", "Attached GPUs")


# --- Line rewriting ---


@dataclass
class _RewriteState:
    last_line: str = ""
    last_indent: int = 0
    device_cursor: int = 0
    pending_id: str = ""


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _key(line: str) -> str:
    return line.split(":", 1)[0].strip()


def _rule_device_block(line: str, last_key: str, st: _RewriteState) -> str | None:
    # "GPU 00000000:53:00.0" -> "GPU0:", and remember the identifier
    if not line.startswith(DEVICE_BLOCK_PREFIX):
        return None
    st.pending_id = line
    out = f"GPU{st.device_cursor}:"
    st.device_cursor += 1
    return out


def _rule_section_header(line: str, last_key: str, st: _RewriteState) -> str | None:
    # "    Driver Model" -> "    Driver Model:"
    if ":" in line:
        return None
    return line + ":"


def _rule_none_value(line: str, last_key: str, st: _RewriteState) -> str | None:
    # "Processes : None" -> "Processes : null"
    _, sep, value = line.partition(":")
    if not sep or value.strip() != "None":
        return None
    return line[: line.rindex("None")] + "null"


def _rule_denest_process(line: str, last_key: str, st: _RewriteState) -> str | None:
    # "    Type : C" under "Process ID" -> "Process Type : C" one level up
    if not last_key.startswith(_DENEST_PROCESS_KEYS):
        return None
    return " " * st.last_indent + "Process " + line.strip()


def _rule_denest_slowdown(line: str, last_key: str, st: _RewriteState) -> str | None:
    # "    HW Thermal Slowdown : Not Active" under "HW Slowdown" moves up a level
    if not last_key.startswith(_DENEST_KEYS):
        return None
    return " " * st.last_indent + line.strip()


_Rule = Callable[[str, str, _RewriteState], "str | None"]

# first match wins
REWRITE_RULES: tuple[_Rule, ...] = (
    _rule_device_block,
    _rule_section_header,
    _rule_none_value,
    _rule_denest_process,
    _rule_denest_slowdown,
)


def _is_dropped(line: str) -> bool:
    return not line.strip() or any(m in line for m in _BANNER_MARKERS)


def rewrite_lines(lines: Iterable[str]) -> Iterator[str]:
    """Rewrite raw query output lines into loadable YAML, one line at a time."""
    st = _RewriteState()
    for line in lines:
        line = line.rstrip()
        if _is_dropped(line):
            continue

        id_line = ""
        if st.pending_id:
            id_line = " " * _indent(line) + "ID: " + st.pending_id
            st.pending_id = ""

        last_key = _key(st.last_line)
        for rule in REWRITE_RULES:
            rewritten = rule(line, last_key, st)
            if rewritten is not None:
                line = rewritten
                break

        if id_line:
            yield id_line
        yield line

        st.last_line = line
        st.last_indent = _indent(line)


# --- YAML step ---


class _Block(dict):  # type: ignore[type-arg]
    """Mapping that also keeps every key/value pair, duplicates included."""

    def __init__(self) -> None:
        super().__init__()
        self.pairs: list[tuple[Any, Any]] = []


class _QueryLoader(yaml.SafeLoader):
    """SafeLoader that keeps plain scalars as text and records duplicate keys."""


_QueryLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag == "tag:yaml.org,2002:null"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_block(loader: _QueryLoader, node: yaml.MappingNode) -> Iterator[_Block]:
    block = _Block()
    yield block
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=False)
        value = loader.construct_object(value_node, deep=False)
        block.pairs.append((key, value))
        block[key] = value


_QueryLoader.add_constructor("tag:yaml.org,2002:map", _construct_block)


def _load(text: str) -> Mapping[str, Any]:
    root = yaml.load(text, Loader=_QueryLoader)  # noqa: S506
    if not isinstance(root, Mapping):
        raise DecodeError(f"expected a top-level mapping, got {type(root).__name__}")
    return root


def _decode_header(root: Mapping[str, Any]) -> Document:
    timestamp, driver, cuda, attached = (_text(k, root.get(k)) for k in _HEADER_KEYS)
    try:
        attached_gpus = int(attached) if attached else 0
    except ValueError as exc:
        raise DecodeError(f"'Attached GPUs': {exc}") from exc
    return Document(
        timestamp=timestamp,
        driver_version=driver,
        cuda_version=cuda,
        attached_gpus=attached_gpus,
    )


def _decode_full(text: str) -> Document:
    root = _load(text)
    doc = _decode_header(root)
    for key, value in getattr(root, "pairs", root.items()):
        if not isinstance(key, str) or not _DEVICE_KEY_RE.match(key):
            continue
        if value is None:
            continue
        if not isinstance(value, Mapping):
            raise DecodeError(f"{key!r}: expected a device block, got {type(value).__name__}")
        doc.gpus.append(DeviceRecord.from_mapping(value))

    # identifiers appear once per device block; sub-records only learn them now
    for gpu in doc.gpus:
        gpu.propagate_id()
    return doc


def decode_smi_query(data: bytes | str) -> Document:
    """Decode ``nvidia-smi --query`` output into a :class:`Document`.

    On schema drift the returned document only carries the header fields and
    ``decode_error`` is set. :class:`DecodeError` is raised only when not even
    the header can be read.
    """
    raw = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    processed = "\n".join(rewrite_lines(raw.split("\n")))

    try:
        doc = _decode_full(processed)
    except (yaml.YAMLError, DecodeError, TypeError) as err:
        logger.warning("failed to decode nvidia-smi query output, retrying header only: %s", err)
        try:
            doc = _decode_header(_load(processed.split("\nGPU")[0]))
        except (yaml.YAMLError, DecodeError, TypeError) as rerr:
            raise DecodeError(f"failed to decode nvidia-smi query header: {rerr}") from rerr
        if isinstance(err, DecodeError):
            doc.decode_error = err
        else:
            doc.decode_error = DecodeError(str(err))
            doc.decode_error.__cause__ = err
        return doc

    doc.raw = raw
    return doc
