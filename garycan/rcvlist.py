"""Parsing the kernel's CAN receive lists under /proc/net/can."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Union

logger = logging.getLogger(__name__)

# device, can_id, can_mask, function, userdata, matches, ident
_LINE = re.compile(r" +(.+?) +(\w+) +(\w+) +(\w+) +(\w+) +(\w+) +(\w+)", re.ASCII)
_LEADING_INT = re.compile(r"\d+", re.ASCII)


@dataclass(frozen=True)
class RecvInfo:
    """One receive list entry: the device, the filtered id and its match count."""

    device: str
    can_id: int
    matches: int


def _leading_int(text: str) -> int:
    """Read the leading decimal digits of ``text``, as the kernel list is read."""
    match = _LEADING_INT.match(text)
    if match is None:
        raise ValueError(f"invalid integer {text!r}")
    return int(match.group())


def parse_rcvlist(lines: Iterable[str]) -> List[RecvInfo]:
    """Parse the lines of a receive list, skipping titles and empty sections."""
    entries = []
    for line in lines:
        match = _LINE.fullmatch(line.rstrip("\r\n"))
        if match is None:
            continue
        device = match.group(1)
        if device == "device":
            continue
        entries.append(RecvInfo(device, _leading_int(match.group(2)), _leading_int(match.group(6))))
    return entries


def read_rcvlist(path: Union[str, "os.PathLike[str]"]) -> List[RecvInfo]:
    """Read and parse the receive list at ``path``."""
    logger.debug("reading rcvlist %s", path)
    with open(path, encoding="utf-8", errors="replace") as infile:
        entries = parse_rcvlist(infile)
    logger.debug("total item %d", len(entries))
    return entries