"""Persisted workbook structure.

A ``Workbook`` keeps the original OOXML package (every archive member as
bytes, in order) plus the parsed pieces that edits touch: the shared-string
table, the style table and one worksheet XML tree per sheet. Everything
else is written back byte-for-byte.

Drawings, charts, media, embeddings and VBA projects are not supported and
are dropped on load together with their relationships.
"""

from __future__ import annotations

import logging
import posixpath
import re
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Set, Tuple
from xml.etree import ElementTree as ET

from services.errors import AddressError, LoadFailure

from .address import decode_cell, encode_cell
from .schemas import StyleTable
from .styles import parse_styles


logger = logging.getLogger(__name__)


# =============================================================================
# NAMESPACES
# =============================================================================

NS = {
    "main": "http://schemas.openxmlformats.org/spreadsheetml/2006/main",
    "r": "http://schemas.openxmlformats.org/officeDocument/2006/relationships",
    "mc": "http://schemas.openxmlformats.org/markup-compatibility/2006",
    "x14": "http://schemas.microsoft.com/office/spreadsheetml/2009/9/main",
    "x14ac": "http://schemas.microsoft.com/office/spreadsheetml/2009/9/ac",
    "xr": "http://schemas.microsoft.com/office/spreadsheetml/2014/revision",
    "xr2": "http://schemas.microsoft.com/office/spreadsheetml/2015/revision2",
    "xr3": "http://schemas.microsoft.com/office/spreadsheetml/2016/revision3",
    "xr6": "http://schemas.microsoft.com/office/spreadsheetml/2014/revision6",
    "xr10": "http://schemas.microsoft.com/office/spreadsheetml/2014/revision10",
    "x15": "http://schemas.microsoft.com/office/spreadsheetml/2010/11/main",
    "rel": "http://schemas.openxmlformats.org/package/2006/relationships",
    "ct": "http://schemas.openxmlformats.org/package/2006/content-types",
}

# Register prefixes so re-serialized children keep readable names.
# SpreadsheetML is the default namespace of every part ElementTree writes.
for prefix, uri in NS.items():
    if prefix not in ("rel", "ct"):
        ET.register_namespace(prefix if prefix != "main" else "", uri)

XLSX_SIGNATURE = b"PK\x03\x04"
XLS_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

WORKBOOK_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml"

_UNSUPPORTED_PART = re.compile(
    r"^xl/(drawings/drawing[^/]*\.xml|drawings/_rels/drawing[^/]*\.rels|charts/.*|chartsheets/.*"
    r"|media/.*|embeddings/.*|vbaProject\.bin|vbaProjectSignature\.bin|_rels/vbaProject\.bin\.rels)$"
)


# =============================================================================
# STRUCTURES
# =============================================================================

@dataclass
class SheetPart:
    """One worksheet's persisted XML tree plus lookups into it."""
    name: str
    path: str
    root: ET.Element
    raw: bytes
    state: Optional[str] = None
    dirty: bool = False
    cells: Dict[Tuple[int, int], ET.Element] = field(default_factory=dict)
    rows: Dict[int, ET.Element] = field(default_factory=dict)

    @property
    def is_hidden(self) -> bool:
        return self.state in ("hidden", "veryHidden")

    def dimension(self) -> Optional[str]:
        dim_el = self.root.find(f"{{{NS['main']}}}dimension")
        if dim_el is None:
            return None
        return dim_el.get("ref") or None

    def sheet_data(self) -> ET.Element:
        ns = NS["main"]
        sheet_data = self.root.find(f"{{{ns}}}sheetData")
        if sheet_data is None:
            sheet_data = ET.SubElement(self.root, f"{{{ns}}}sheetData")
        return sheet_data

    def persisted_entry(self, row: int, col: int) -> Optional[ET.Element]:
        return self.cells.get((row, col))

    def used_extent(self) -> Optional[Tuple[int, int, int, int]]:
        """Bounding rectangle of all persisted entries, or None."""
        if not self.cells:
            return None
        rows = [r for r, _ in self.cells]
        cols = [c for _, c in self.cells]
        return min(rows), min(cols), max(rows), max(cols)


@dataclass
class Workbook:
    """The persisted workbook: archive members plus the parsed editable parts."""
    filename: str
    parts: Dict[str, bytes]
    compress_types: Dict[str, int]
    sheets: List[SheetPart]
    shared_strings: List[str]
    styles: StyleTable
    date1904: bool = False
    source_format: str = "xlsx"
    new_strings: Dict[str, int] = field(default_factory=dict)
    formulas_changed: bool = False
    _sst_lookup: Dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def sheet_names(self) -> List[str]:
        return [s.name for s in self.sheets]

    def get_sheet(self, name: str) -> Optional[SheetPart]:
        """Get a sheet by name."""
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        return None

    def shared_string(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.shared_strings):
            return self.shared_strings[index]
        return None

    def shared_string_index(self, text: str) -> int:
        """Get or create a shared string index for a value."""
        if text in self._sst_lookup:
            return self._sst_lookup[text]
        new_index = len(self.shared_strings)
        self.shared_strings.append(text)
        self.new_strings[text] = new_index
        self._sst_lookup[text] = new_index
        return new_index


# =============================================================================
# PACKAGE READING
# =============================================================================

def sniff_format(data: bytes) -> Optional[str]:
    """Return "xlsx", "xls" or None from the leading bytes."""
    if data.startswith(XLSX_SIGNATURE):
        return "xlsx"
    if data.startswith(XLS_SIGNATURE):
        return "xls"
    return None


def read_archive(data: bytes) -> Tuple[Dict[str, bytes], Dict[str, int]]:
    """Read every archive member, keeping order and compression per member."""
    parts: Dict[str, bytes] = {}
    compress_types: Dict[str, int] = {}
    with zipfile.ZipFile(BytesIO(data), "r") as zf:
        for item in zf.infolist():
            if item.is_dir():
                continue
            parts[item.filename] = zf.read(item.filename)
            compress_types[item.filename] = item.compress_type
    return parts, compress_types


def _parse_shared_strings(xml_bytes: Optional[bytes]) -> Tuple[List[str], Dict[str, int]]:
    """Parse the shared strings table.

    Returns every entry's text plus a lookup of plain (non-rich) entries
    that new values may reuse.
    """
    texts: List[str] = []
    lookup: Dict[str, int] = {}
    if not xml_bytes:
        return texts, lookup

    ns = NS["main"]
    root = ET.fromstring(xml_bytes)
    for i, si in enumerate(root.findall(f"{{{ns}}}si")):
        t_el = si.find(f"{{{ns}}}t")
        if t_el is not None:
            text = t_el.text or ""
            texts.append(text)
            lookup.setdefault(text, i)
        else:
            # Rich text: concatenate runs, never reused for new values
            texts.append("".join(t.text or "" for t in si.iter(f"{{{ns}}}t")))
    return texts, lookup


def _relationship_targets(rels_xml: bytes, base_dir: str) -> Dict[str, str]:
    """Map relationship ids to archive paths resolved against base_dir."""
    rels_root = ET.fromstring(rels_xml)
    result: Dict[str, str] = {}
    for rel in rels_root.findall(f"{{{NS['rel']}}}Relationship"):
        rel_id = rel.get("Id")
        target = rel.get("Target")
        if not rel_id or not target or rel.get("TargetMode") == "External":
            continue
        if target.startswith("/"):
            path = target[1:]
        else:
            path = posixpath.normpath(posixpath.join(base_dir, target))
        result[rel_id] = path
    return result


def _rels_path(part_path: str) -> str:
    part = PurePosixPath(part_path)
    return str(part.parent / "_rels" / f"{part.name}.rels")


def _index_sheet(sheet: SheetPart) -> None:
    """Build (row, col) -> <c> and row -> <row> lookups.

    Rows and cells without an explicit r attribute follow their predecessor;
    the computed reference is written back onto the element.
    """
    ns = NS["main"]
    sheet_data = sheet.root.find(f"{{{ns}}}sheetData")
    if sheet_data is None:
        return
    last_row = -1
    for row_el in sheet_data.findall(f"{{{ns}}}row"):
        r_attr = row_el.get("r")
        row_idx = int(r_attr) - 1 if r_attr and r_attr.isdigit() else last_row + 1
        last_row = row_idx
        sheet.rows[row_idx] = row_el
        last_col = -1
        for cell_el in row_el.findall(f"{{{ns}}}c"):
            ref = cell_el.get("r")
            try:
                row, col = decode_cell(ref) if ref else (row_idx, last_col + 1)
            except AddressError:
                logger.warning(f"[LOAD] Skipping cell with bad reference {ref!r} in {sheet.name}")
                continue
            if not ref:
                cell_el.set("r", encode_cell(row, col))
            last_col = col
            sheet.cells[(row, col)] = cell_el


def remove_parts(parts: Dict[str, bytes], names: Set[str]) -> None:
    """Delete archive members and every relationship/content-type entry naming them.

    Relationship files and the content types listing are rewritten
    textually so untouched markup is kept byte-for-byte.
    """
    names = {name for name in names if name in parts}
    if not names:
        return

    for name in names:
        del parts[name]

    for rels_name in [n for n in parts if n.endswith(".rels")]:
        rels_xml = parts[rels_name]
        # xl/worksheets/_rels/sheet1.xml.rels -> targets resolve against xl/worksheets
        owner_dir = posixpath.dirname(posixpath.dirname(rels_name))
        try:
            targets = _relationship_targets(rels_xml, owner_dir)
        except ET.ParseError:
            continue
        stale = [rel_id for rel_id, path in targets.items() if path in names]
        if not stale:
            continue
        text = rels_xml.decode("utf-8")
        for rel_id in stale:
            text = re.sub(rf'<Relationship\b[^>]*\bId="{re.escape(rel_id)}"[^>]*/>', "", text)
        parts[rels_name] = text.encode("utf-8")

    content_types = parts.get("[Content_Types].xml")
    if content_types is not None:
        text = content_types.decode("utf-8")
        for name in names:
            text = re.sub(rf'<Override\b[^>]*\bPartName="/{re.escape(name)}"[^>]*/>', "", text)
        parts["[Content_Types].xml"] = text.encode("utf-8")


def _drop_unsupported_parts(parts: Dict[str, bytes]) -> Set[str]:
    """Remove unsupported members and every reference to them.

    Returns the removed member names.
    """
    dropped = {name for name in parts if _UNSUPPORTED_PART.match(name)}
    if not dropped:
        return dropped

    remove_parts(parts, dropped)

    content_types = parts.get("[Content_Types].xml")
    if content_types is not None:
        text = re.sub(
            r'ContentType="application/vnd\.ms-excel\.sheet\.macroEnabled\.main\+xml"',
            f'ContentType="{WORKBOOK_CONTENT_TYPE}"',
            content_types.decode("utf-8"),
        )
        parts["[Content_Types].xml"] = text.encode("utf-8")

    logger.info(f"[LOAD] Dropped {len(dropped)} unsupported part(s): {sorted(dropped)}")
    return dropped


def _drop_drawing_references(sheet: SheetPart, parts: Dict[str, bytes]) -> None:
    """Remove <drawing> elements whose relationship no longer exists."""
    ns = NS["main"]
    drawing_el = sheet.root.find(f"{{{ns}}}drawing")
    if drawing_el is None:
        return
    rel_id = drawing_el.get(f"{{{NS['r']}}}id")
    rels_xml = parts.get(_rels_path(sheet.path))
    targets = _relationship_targets(rels_xml, posixpath.dirname(sheet.path)) if rels_xml else {}
    if rel_id not in targets:
        sheet.root.remove(drawing_el)
        sheet.dirty = True


def open_package(
    parts: Dict[str, bytes],
    compress_types: Dict[str, int],
    filename: str,
    source_format: str = "xlsx",
) -> Workbook:
    """Build a Workbook from archive members."""
    ns = NS["main"]
    r_ns = NS["r"]

    _drop_unsupported_parts(parts)

    wb_root = ET.fromstring(parts["xl/workbook.xml"])
    wb_rels = parts.get("xl/_rels/workbook.xml.rels")
    id_to_path = _relationship_targets(wb_rels, "xl") if wb_rels else {}

    workbook_pr = wb_root.find(f"{{{ns}}}workbookPr")
    date1904 = workbook_pr is not None and workbook_pr.get("date1904", "0").lower() in ("1", "true")

    shared_strings, sst_lookup = _parse_shared_strings(parts.get("xl/sharedStrings.xml"))
    styles = parse_styles(parts.get("xl/styles.xml"))

    sheets: List[SheetPart] = []
    sheets_el = wb_root.find(f"{{{ns}}}sheets")
    if sheets_el is not None:
        for sheet_el in sheets_el.findall(f"{{{ns}}}sheet"):
            name = sheet_el.get("name")
            path = id_to_path.get(sheet_el.get(f"{{{r_ns}}}id", ""))
            if not name or not path or path not in parts:
                continue
            raw = parts[path]
            root = ET.fromstring(raw)
            if root.tag != f"{{{ns}}}worksheet":
                # Chartsheets and dialog sheets carry no cells
                continue
            sheet = SheetPart(name=name, path=path, root=root, raw=raw, state=sheet_el.get("state"))
            _index_sheet(sheet)
            _drop_drawing_references(sheet, parts)
            sheets.append(sheet)

    if not sheets:
        raise LoadFailure("Workbook contains no worksheets")

    return Workbook(
        filename=filename,
        parts=parts,
        compress_types=compress_types,
        sheets=sheets,
        shared_strings=shared_strings,
        styles=styles,
        date1904=date1904,
        source_format=source_format,
        _sst_lookup=sst_lookup,
    )


def load_workbook(data: bytes, filename: str) -> Workbook:
    """Parse uploaded bytes into a Workbook.

    Accepts the zip-based format and the legacy binary format (converted on
    import). Any parse problem surfaces as LoadFailure.
    """
    fmt = sniff_format(data)
    if fmt is None:
        raise LoadFailure(f"{filename}: not a recognized workbook file")

    try:
        if fmt == "xls":
            from .legacy import convert_xls

            parts = convert_xls(data)
            compress_types = {name: zipfile.ZIP_DEFLATED for name in parts}
        else:
            parts, compress_types = read_archive(data)
        workbook = open_package(parts, compress_types, filename, source_format=fmt)
    except LoadFailure:
        raise
    except (zipfile.BadZipFile, KeyError, ET.ParseError, ValueError) as e:
        raise LoadFailure(f"Failed to parse {filename}: {e}") from e

    logger.info(
        f"[LOAD] Parsed {filename} ({fmt}): {len(workbook.sheets)} sheet(s), "
        f"{len(workbook.shared_strings)} shared strings, {len(workbook.styles.cell_xfs)} cell formats"
    )
    return workbook
