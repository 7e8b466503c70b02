"""Legacy .xls import.

Reads a BIFF workbook with xlrd (formatting info enabled) and converts it
into the same OOXML archive members a .xlsx upload provides, so the rest
of the engine only ever edits one persisted structure.

Cached formula results are imported as plain values; xlrd does not expose
formula text.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

import xlrd
from xlrd.compdoc import CompDocError

from services.errors import LoadFailure

from .address import encode_cell, encode_range
from .package import NS, WORKBOOK_CONTENT_TYPE


logger = logging.getLogger(__name__)

CT_NS = NS["ct"]
REL_NS = NS["rel"]
MAIN_NS = NS["main"]
R_NS = NS["r"]

_DOC_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
_XML_DECL = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\r\n'

# numFmtIds Excel defines without a formatCode
_BUILTIN_FORMAT_IDS = set(range(0, 50))
_FIRST_CUSTOM_FORMAT_ID = 164

_LINE_STYLES = {
    1: "thin", 2: "medium", 3: "dashed", 4: "dotted", 5: "thick", 6: "double",
    7: "hair", 8: "mediumDashed", 9: "dashDot", 10: "mediumDashDot",
    11: "dashDotDot", 12: "mediumDashDotDot", 13: "slantDashDot",
}

_HORIZONTAL = {1: "left", 2: "center", 3: "right", 4: "fill", 5: "justify", 6: "centerContinuous", 7: "distributed"}
_VERTICAL = {0: "top", 1: "center", 2: "bottom", 3: "justify", 4: "distributed"}


def _to_bytes(root: ET.Element) -> bytes:
    return _XML_DECL + ET.tostring(root, encoding="unicode").encode("utf-8")


def _rgb(book, colour_index: Optional[int]) -> Optional[str]:
    """ARGB hex for a palette index, or None for automatic/system colours."""
    if colour_index is None:
        return None
    rgb = book.colour_map.get(colour_index)
    if not rgb:
        return None
    r, g, b = rgb
    return f"FF{r:02X}{g:02X}{b:02X}"


# =============================================================================
# STYLES
# =============================================================================

def _number_formats(book) -> Tuple[Dict[int, int], List[Tuple[int, str]]]:
    """Map xlrd format keys to numFmtIds and collect custom format codes."""
    key_to_id: Dict[int, int] = {}
    custom: List[Tuple[int, str]] = []
    next_id = _FIRST_CUSTOM_FORMAT_ID
    for key, fmt in sorted(book.format_map.items()):
        if key in _BUILTIN_FORMAT_IDS:
            key_to_id[key] = key
            continue
        key_to_id[key] = next_id
        custom.append((next_id, fmt.format_str))
        next_id += 1
    return key_to_id, custom


def _build_styles(book) -> bytes:
    root = ET.Element(f"{{{MAIN_NS}}}styleSheet")
    key_to_id, custom = _number_formats(book)

    if custom:
        num_fmts = ET.SubElement(root, f"{{{MAIN_NS}}}numFmts", {"count": str(len(custom))})
        for fmt_id, code in custom:
            ET.SubElement(num_fmts, f"{{{MAIN_NS}}}numFmt", {"numFmtId": str(fmt_id), "formatCode": code})

    fonts = ET.SubElement(root, f"{{{MAIN_NS}}}fonts")
    font_list = list(book.font_list) or [None]
    for font in font_list:
        font_el = ET.SubElement(fonts, f"{{{MAIN_NS}}}font")
        if font is None:
            ET.SubElement(font_el, f"{{{MAIN_NS}}}sz", {"val": "11"})
            ET.SubElement(font_el, f"{{{MAIN_NS}}}name", {"val": "Calibri"})
            continue
        if font.bold:
            ET.SubElement(font_el, f"{{{MAIN_NS}}}b")
        if font.italic:
            ET.SubElement(font_el, f"{{{MAIN_NS}}}i")
        if font.underlined:
            ET.SubElement(font_el, f"{{{MAIN_NS}}}u")
        ET.SubElement(font_el, f"{{{MAIN_NS}}}sz", {"val": f"{font.height / 20:g}"})
        color = _rgb(book, font.colour_index)
        if color:
            ET.SubElement(font_el, f"{{{MAIN_NS}}}color", {"rgb": color})
        if font.name:
            ET.SubElement(font_el, f"{{{MAIN_NS}}}name", {"val": font.name})
    fonts.set("count", str(len(font_list)))

    fills = ET.SubElement(root, f"{{{MAIN_NS}}}fills")
    for pattern in ("none", "gray125"):
        fill_el = ET.SubElement(fills, f"{{{MAIN_NS}}}fill")
        ET.SubElement(fill_el, f"{{{MAIN_NS}}}patternFill", {"patternType": pattern})

    borders = ET.SubElement(root, f"{{{MAIN_NS}}}borders")
    empty_border = ET.SubElement(borders, f"{{{MAIN_NS}}}border")
    for edge in ("left", "right", "top", "bottom", "diagonal"):
        ET.SubElement(empty_border, f"{{{MAIN_NS}}}{edge}")

    cell_xfs = ET.SubElement(root, f"{{{MAIN_NS}}}cellXfs")
    xf_list = list(book.xf_list)
    for xf in xf_list:
        attrs = {
            "numFmtId": str(key_to_id.get(xf.format_key, 0)),
            "fontId": str(xf.font_index if xf.font_index < len(font_list) else 0),
            "fillId": "0",
            "borderId": "0",
            "xfId": "0",
        }

        background = xf.background
        if background is not None and background.fill_pattern:
            color = _rgb(book, background.pattern_colour_index)
            fill_el = ET.SubElement(fills, f"{{{MAIN_NS}}}fill")
            pattern_el = ET.SubElement(fill_el, f"{{{MAIN_NS}}}patternFill", {"patternType": "solid"})
            if color:
                ET.SubElement(pattern_el, f"{{{MAIN_NS}}}fgColor", {"rgb": color})
            attrs["fillId"] = str(len(fills) - 1)
            attrs["applyFill"] = "1"

        border = xf.border
        if border is not None and any(
            getattr(border, f"{edge}_line_style", 0) for edge in ("left", "right", "top", "bottom")
        ):
            border_el = ET.SubElement(borders, f"{{{MAIN_NS}}}border")
            for edge in ("left", "right", "top", "bottom"):
                style = _LINE_STYLES.get(getattr(border, f"{edge}_line_style", 0))
                edge_el = ET.SubElement(border_el, f"{{{MAIN_NS}}}{edge}")
                if style:
                    edge_el.set("style", style)
                    color = _rgb(book, getattr(border, f"{edge}_colour_index", None))
                    if color:
                        ET.SubElement(edge_el, f"{{{MAIN_NS}}}color", {"rgb": color})
            ET.SubElement(border_el, f"{{{MAIN_NS}}}diagonal")
            attrs["borderId"] = str(len(borders) - 1)
            attrs["applyBorder"] = "1"

        xf_el = ET.SubElement(cell_xfs, f"{{{MAIN_NS}}}xf", attrs)
        alignment = xf.alignment
        if alignment is not None:
            align_attrs = {}
            if alignment.hor_align in _HORIZONTAL:
                align_attrs["horizontal"] = _HORIZONTAL[alignment.hor_align]
            if alignment.vert_align in _VERTICAL and alignment.vert_align != 2:
                align_attrs["vertical"] = _VERTICAL[alignment.vert_align]
            if align_attrs:
                xf_el.set("applyAlignment", "1")
                ET.SubElement(xf_el, f"{{{MAIN_NS}}}alignment", align_attrs)

    if not xf_list:
        ET.SubElement(cell_xfs, f"{{{MAIN_NS}}}xf", {"numFmtId": "0", "fontId": "0", "fillId": "0", "borderId": "0"})

    fills.set("count", str(len(fills)))
    borders.set("count", str(len(borders)))
    cell_xfs.set("count", str(len(cell_xfs)))
    return _to_bytes(root)


# =============================================================================
# SHEETS
# =============================================================================

class _StringTable:
    def __init__(self):
        self.strings: List[str] = []
        self.lookup: Dict[str, int] = {}
        self.count = 0

    def index(self, text: str) -> int:
        self.count += 1
        if text not in self.lookup:
            self.lookup[text] = len(self.strings)
            self.strings.append(text)
        return self.lookup[text]

    def to_bytes(self) -> bytes:
        root = ET.Element(
            f"{{{MAIN_NS}}}sst", {"count": str(self.count), "uniqueCount": str(len(self.strings))}
        )
        for text in self.strings:
            si = ET.SubElement(root, f"{{{MAIN_NS}}}si")
            t = ET.SubElement(si, f"{{{MAIN_NS}}}t")
            t.text = text
            if text and (text[0].isspace() or text[-1].isspace()):
                t.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")
        return _to_bytes(root)


def _build_sheet(sheet, strings: _StringTable) -> bytes:
    root = ET.Element(f"{{{MAIN_NS}}}worksheet")
    if sheet.nrows and sheet.ncols:
        ref = encode_range(0, 0, sheet.nrows - 1, sheet.ncols - 1)
    else:
        ref = "A1"
    ET.SubElement(root, f"{{{MAIN_NS}}}dimension", {"ref": ref})
    sheet_data = ET.SubElement(root, f"{{{MAIN_NS}}}sheetData")

    for row in range(sheet.nrows):
        row_el = None
        for col in range(sheet.ncols):
            cell = sheet.cell(row, col)
            if cell.ctype == xlrd.XL_CELL_EMPTY:
                continue
            if row_el is None:
                row_el = ET.SubElement(sheet_data, f"{{{MAIN_NS}}}row", {"r": str(row + 1)})
            c_el = ET.SubElement(row_el, f"{{{MAIN_NS}}}c", {"r": encode_cell(row, col)})
            if cell.xf_index:
                c_el.set("s", str(cell.xf_index))

            if cell.ctype == xlrd.XL_CELL_BLANK:
                continue
            v_el = ET.SubElement(c_el, f"{{{MAIN_NS}}}v")
            if cell.ctype == xlrd.XL_CELL_TEXT:
                c_el.set("t", "s")
                v_el.text = str(strings.index(cell.value))
            elif cell.ctype == xlrd.XL_CELL_BOOLEAN:
                c_el.set("t", "b")
                v_el.text = "1" if cell.value else "0"
            elif cell.ctype == xlrd.XL_CELL_ERROR:
                c_el.set("t", "e")
                v_el.text = xlrd.error_text_from_code.get(cell.value, "#N/A")
            else:
                # Numbers and dates; the number format keeps dates recognizable
                value = float(cell.value)
                v_el.text = str(int(value)) if value.is_integer() else repr(value)

    if sheet.merged_cells:
        merges = ET.SubElement(root, f"{{{MAIN_NS}}}mergeCells", {"count": str(len(sheet.merged_cells))})
        for rlo, rhi, clo, chi in sheet.merged_cells:
            ET.SubElement(merges, f"{{{MAIN_NS}}}mergeCell", {"ref": encode_range(rlo, clo, rhi - 1, chi - 1)})

    return _to_bytes(root)


# =============================================================================
# PACKAGE
# =============================================================================

def _content_types(sheet_count: int) -> bytes:
    # Package parts carry their namespace as a plain xmlns attribute
    root = ET.Element("Types", {"xmlns": CT_NS})
    ET.SubElement(root, "Default", {
        "Extension": "rels", "ContentType": "application/vnd.openxmlformats-package.relationships+xml",
    })
    ET.SubElement(root, "Default", {"Extension": "xml", "ContentType": "application/xml"})
    overrides = [
        ("/xl/workbook.xml", WORKBOOK_CONTENT_TYPE),
        ("/xl/styles.xml", "application/vnd.openxmlformats-officedocument.spreadsheetml.styles+xml"),
        ("/xl/sharedStrings.xml", "application/vnd.openxmlformats-officedocument.spreadsheetml.sharedStrings+xml"),
    ]
    for i in range(1, sheet_count + 1):
        overrides.append((
            f"/xl/worksheets/sheet{i}.xml",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml",
        ))
    for part_name, content_type in overrides:
        ET.SubElement(root, "Override", {"PartName": part_name, "ContentType": content_type})
    return _to_bytes(root)


def _relationships(entries: List[Tuple[str, str, str]]) -> bytes:
    root = ET.Element("Relationships", {"xmlns": REL_NS})
    for rel_id, rel_type, target in entries:
        ET.SubElement(root, "Relationship", {
            "Id": rel_id, "Type": f"{_DOC_REL}/{rel_type}", "Target": target,
        })
    return _to_bytes(root)


def _build_workbook(book, sheets) -> bytes:
    root = ET.Element(f"{{{MAIN_NS}}}workbook")
    workbook_pr = ET.SubElement(root, f"{{{MAIN_NS}}}workbookPr")
    if book.datemode == 1:
        workbook_pr.set("date1904", "1")
    sheets_el = ET.SubElement(root, f"{{{MAIN_NS}}}sheets")
    for i, sheet in enumerate(sheets, start=1):
        attrs = {"name": sheet.name, "sheetId": str(i), f"{{{R_NS}}}id": f"rId{i}"}
        visibility = getattr(sheet, "visibility", 0)
        if visibility == 1:
            attrs["state"] = "hidden"
        elif visibility == 2:
            attrs["state"] = "veryHidden"
        ET.SubElement(sheets_el, f"{{{MAIN_NS}}}sheet", attrs)
    return _to_bytes(root)


def _book_to_parts(book) -> Dict[str, bytes]:
    """Convert an xlrd Book into OOXML archive members."""
    sheets = list(book.sheets())
    if not sheets:
        raise LoadFailure("Workbook contains no worksheets")

    strings = _StringTable()
    parts: Dict[str, bytes] = {}
    parts["[Content_Types].xml"] = _content_types(len(sheets))
    parts["_rels/.rels"] = _relationships([("rId1", "officeDocument", "xl/workbook.xml")])
    parts["xl/workbook.xml"] = _build_workbook(book, sheets)

    workbook_rels = [(f"rId{i}", "worksheet", f"worksheets/sheet{i}.xml") for i in range(1, len(sheets) + 1)]
    workbook_rels.append((f"rId{len(sheets) + 1}", "styles", "styles.xml"))
    workbook_rels.append((f"rId{len(sheets) + 2}", "sharedStrings", "sharedStrings.xml"))
    parts["xl/_rels/workbook.xml.rels"] = _relationships(workbook_rels)

    parts["xl/styles.xml"] = _build_styles(book)
    for i, sheet in enumerate(sheets, start=1):
        parts[f"xl/worksheets/sheet{i}.xml"] = _build_sheet(sheet, strings)
    parts["xl/sharedStrings.xml"] = strings.to_bytes()
    return parts


def convert_xls(data: bytes) -> Dict[str, bytes]:
    """Read legacy .xls bytes and return equivalent OOXML archive members."""
    try:
        book = xlrd.open_workbook(file_contents=data, formatting_info=True)
    except (xlrd.XLRDError, CompDocError, EOFError, AssertionError, IndexError, ValueError) as e:
        raise LoadFailure(f"Failed to read legacy workbook: {e}") from e

    try:
        parts = _book_to_parts(book)
    finally:
        book.release_resources()

    logger.info(f"[LOAD] Converted legacy workbook: {book.nsheets} sheet(s)")
    return parts
