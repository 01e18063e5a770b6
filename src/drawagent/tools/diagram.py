"""Diagram document builder: validate mxCell fragments and merge them.

The model only ever sends content cells. The document skeleton (mxfile,
mxGraphModel, root and the reserved cells ``0`` and ``1``) is added here.
"""

from __future__ import annotations

import logging
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

RESERVED_IDS = ("0", "1")
REFERENCE_ATTRS = ("parent", "source", "target")
MAX_REPORTED_ERRORS = 10

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
DOCUMENT_HEAD = (
    XML_DECLARATION
    + '<mxfile host="app.diagrams.net" agent="Draw.io Agent">'
    + '<diagram name="Page-1" id="diagram-1">'
    + '<mxGraphModel dx="1422" dy="794" grid="1" gridSize="10" guides="1" tooltips="1" '
    + 'connect="1" arrows="1" fold="1" page="1" pageScale="1" pageWidth="827" '
    + 'pageHeight="1169" math="0" shadow="0">'
    + '<root><mxCell id="0"/><mxCell id="1" parent="0"/>'
)
DOCUMENT_TAIL = "</root></mxGraphModel></diagram></mxfile>"

# Attribute values may contain an unescaped '>', so quoted runs are skipped whole.
_TAG_BODY = r"""<mxCell\b(?:[^>"']|"[^"]*"|'[^']*')*"""
_OPEN_TAG = re.compile(_TAG_BODY + ">")
_TAG_START = re.compile(r"<mxCell\b")
_CLOSE_TAG = re.compile(r"</mxCell>")
_SELF_CLOSING_TAG = re.compile(_TAG_BODY + "/>")
_WRAPPER_MARKUP = re.compile(r"<(mxfile|mxGraphModel|diagram|root)[\s>/]")


@dataclass
class DiagramResult:
    success: bool
    xml: str | None = None
    error: str | None = None
    is_truncated: bool = False
    cell_count: int = 0
    appended_count: int = 0
    cell_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def is_fragment_complete(xml: str) -> bool:
    """True when every opened mxCell is closed and the text ends on '>'."""
    trimmed = xml.strip()
    if not trimmed.endswith(">"):
        return False
    opened = len(_OPEN_TAG.findall(trimmed))
    if len(_TAG_START.findall(trimmed)) != opened:
        return False
    closed = len(_CLOSE_TAG.findall(trimmed))
    self_closed = len(_SELF_CLOSING_TAG.findall(trimmed))
    return opened == closed + self_closed


def _truncation_result(xml: str, advice: str) -> DiagramResult:
    ending = xml.strip()[-200:]
    return DiagramResult(
        success=False,
        is_truncated=True,
        error=(
            "Output was truncated: the XML fragment is incomplete "
            "(an mxCell tag is left open or the text does not end with '>').\n"
            f"XML ending (last 200 chars):\n{ending}\n\n"
            f"SOLUTION: {advice}"
        ),
    )


def _parse_fragment(xml: str) -> ET.Element:
    return ET.fromstring(f"<wrapper>{xml}</wrapper>")


def _format_errors(errors: list[str]) -> str:
    shown = errors[:MAX_REPORTED_ERRORS]
    text = "\n".join(f"- {e}" for e in shown)
    if len(errors) > len(shown):
        text += f"\n- ... and {len(errors) - len(shown)} more"
    return text


def _structural_errors(wrapper: ET.Element) -> list[str]:
    errors = []
    for i, child in enumerate(wrapper):
        if child.tag != "mxCell":
            errors.append(f"Element {i} is <{child.tag}>; only mxCell elements are allowed at the top level")
        elif child.find(".//mxCell") is not None:
            errors.append(
                f'Cell id="{child.get("id")}" contains a nested mxCell; '
                "all mxCell elements must be direct children of root"
            )
    return errors


def validate_fragment(xml: str) -> list[str]:
    """Content checks for a fragment passed to display_diagram."""
    if not xml.strip():
        return ["XML is empty"]
    if "<mxCell" not in xml:
        return ["XML must contain at least one <mxCell> element"]
    if _WRAPPER_MARKUP.search(xml):
        return [
            "Do not include <mxfile>, <mxGraphModel>, <diagram> or <root> tags. "
            "Send only the mxCell elements; the system adds the wrapper."
        ]
    try:
        wrapper = _parse_fragment(xml)
    except ET.ParseError as e:
        return [f"XML is not well-formed: {e}"]

    errors = _structural_errors(wrapper)
    cells = wrapper.findall("mxCell")
    ids: set[str] = set()
    for i, cell in enumerate(cells):
        cid = cell.get("id")
        if not cid:
            errors.append(f"Cell {i} is missing id attribute")
            continue
        if cid in RESERVED_IDS:
            errors.append(
                f'Cell id="{cid}" is reserved; the system adds cells "0" and "1", start from id="2"'
            )
            continue
        if cid in ids:
            errors.append(f'Duplicate cell id="{cid}"')
            continue
        ids.add(cid)
        if not cell.get("parent"):
            errors.append(f'Cell id="{cid}" is missing parent attribute')

    known = ids | set(RESERVED_IDS)
    for cell in cells:
        for attr in REFERENCE_ATTRS:
            ref = cell.get(attr)
            if ref and ref not in known:
                errors.append(f'Cell id="{cell.get("id")}" references missing {attr} "{ref}"')
    return errors


def wrap_fragment(xml: str) -> str:
    return DOCUMENT_HEAD + xml.strip() + DOCUMENT_TAIL


def _content_cells(root_el: ET.Element) -> list[ET.Element]:
    return [c for c in root_el.iter("mxCell") if c.get("id") not in RESERVED_IDS]


def count_cells(document_xml: str) -> int:
    """Number of content cells (reserved root cells excluded)."""
    doc = ET.fromstring(document_xml.encode("utf-8"))
    return len(_content_cells(doc))


def display_diagram(xml: str) -> DiagramResult:
    """Validate a fragment and wrap it into a fresh document."""
    if not isinstance(xml, str):
        return DiagramResult(
            success=False,
            error="Missing or invalid xml parameter. Provide the mxCell elements as a string.",
        )
    if not is_fragment_complete(xml):
        return _truncation_result(
            xml,
            "Generate a smaller diagram. Call display_diagram with fewer cells (a first "
            "skeleton of the main components), then add the rest with append_diagram, "
            "8-12 cells per call.",
        )
    errors = validate_fragment(xml)
    if errors:
        return DiagramResult(
            success=False,
            error="Invalid diagram XML:\n" + _format_errors(errors),
            errors=errors,
        )
    document = wrap_fragment(xml)
    cells = _content_cells(ET.fromstring(document.encode("utf-8")))
    return DiagramResult(
        success=True,
        xml=document,
        cell_count=len(cells),
        cell_ids=[c.get("id") for c in cells],
    )


def append_diagram(xml: str, current_xml: str | None) -> DiagramResult:
    """Merge a fragment into an existing document.

    Cells are checked one by one; valid cells are merged even when others
    are rejected. A cell is rejected when its id is missing or taken, its
    parent is missing, or a parent/source/target reference does not
    resolve to a cell in the document or among the accepted new cells.
    """
    if not isinstance(xml, str) or not xml.strip():
        return DiagramResult(
            success=False,
            error="Missing or invalid xml parameter. Provide the mxCell elements to append.",
        )
    if not is_fragment_complete(xml):
        return _truncation_result(
            xml, "Send fewer cells per call (8-12 max per append_diagram call)."
        )
    if not current_xml:
        return DiagramResult(
            success=False,
            error=(
                "No existing diagram found. Use display_diagram to create a diagram first, "
                "then use append_diagram to add more cells."
            ),
        )

    try:
        doc = ET.fromstring(current_xml.encode("utf-8"))
    except ET.ParseError as e:
        return DiagramResult(success=False, error=f"Current diagram could not be parsed: {e}")
    root_el = doc.find(".//root")
    if root_el is None:
        return DiagramResult(success=False, error="Current diagram has no <root> element")
    try:
        wrapper = _parse_fragment(xml)
    except ET.ParseError as e:
        return DiagramResult(success=False, error=f"Invalid XML fragment: {e}")

    existing_ids = {c.get("id") for c in root_el.iter("mxCell")}
    errors = _structural_errors(wrapper)
    candidates: list[ET.Element] = []
    new_ids: set[str] = set()
    for i, cell in enumerate(wrapper):
        if cell.tag != "mxCell" or cell.find(".//mxCell") is not None:
            continue
        cid = cell.get("id")
        if not cid:
            errors.append(f"Cell {i} is missing id attribute")
            continue
        if cid in existing_ids or cid in new_ids:
            errors.append(f'Cell with id="{cid}" already exists in diagram')
            continue
        if not cell.get("parent"):
            errors.append(f'Cell id="{cid}" is missing parent attribute')
            continue
        new_ids.add(cid)
        candidates.append(cell)

    # Drop cells with dangling references until the accepted set is closed.
    accepted = candidates
    changed = True
    while changed:
        changed = False
        known = existing_ids | {c.get("id") for c in accepted}
        kept = []
        for cell in accepted:
            dangling = [
                (attr, cell.get(attr)) for attr in REFERENCE_ATTRS
                if cell.get(attr) and cell.get(attr) not in known
            ]
            if dangling:
                attr, ref = dangling[0]
                errors.append(f'Cell id="{cell.get("id")}" references missing {attr} "{ref}"')
                changed = True
            else:
                kept.append(cell)
        accepted = kept

    if not accepted:
        return DiagramResult(
            success=False,
            error="No cells could be appended. Errors:\n" + _format_errors(errors),
            errors=errors,
        )

    for cell in accepted:
        cell.tail = None
        root_el.append(cell)
    document = XML_DECLARATION + ET.tostring(doc, encoding="unicode")
    return DiagramResult(
        success=True,
        xml=document,
        appended_count=len(accepted),
        cell_count=len(_content_cells(doc)),
        cell_ids=[c.get("id") for c in accepted],
        errors=errors,
    )


class DiagramDocument:
    """The single diagram artifact of a task.

    EMPTY until the first successful ``initialize``; ``append`` extends it
    and a later ``initialize`` replaces it.
    """

    def __init__(self, xml: str | None = None) -> None:
        self._xml = xml
        self._lock = threading.Lock()

    @property
    def xml(self) -> str | None:
        with self._lock:
            return self._xml

    @property
    def is_empty(self) -> bool:
        return self.xml is None

    def initialize(self, fragment: str) -> DiagramResult:
        with self._lock:
            result = display_diagram(fragment)
            if result.success:
                self._xml = result.xml
                logger.info("Diagram initialized with %d cells", result.cell_count)
            return result

    def append(self, fragment: str) -> DiagramResult:
        with self._lock:
            result = append_diagram(fragment, self._xml)
            if result.success:
                self._xml = result.xml
                logger.info(
                    "Appended %d cells (%d rejected), diagram now has %d",
                    result.appended_count, len(result.errors), result.cell_count,
                )
            return result
