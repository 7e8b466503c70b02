"""Serializer - reconciles edited grids into the workbook and encodes it.

Preserves structural fidelity by:
1. Copying every untouched archive member byte-for-byte
2. Rewriting only worksheets whose cells actually changed
3. Keeping each rewritten part's original root tag (all namespace
   declarations, mc:Ignorable, etc.)
4. Appending new text to the shared-string table instead of inlining it
5. Leaving style indexes, number formats and every other cell attribute alone
"""

from __future__ import annotations

import logging
import re
import zipfile
from datetime import datetime
from io import BytesIO
from typing import Dict, Optional, Tuple
from xml.etree import ElementTree as ET

from services.errors import SerializeFailure

from .address import col_letter_to_index, encode_cell
from .loader import datetime_to_serial, decode_persisted_cell, formula_text, shared_formula_masters
from .package import NS, SheetPart, Workbook, remove_parts
from .schemas import Cell, CellType, SheetGrid, infer_cell_type, is_empty_value


logger = logging.getLogger(__name__)

XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SHARED_STRINGS_PATH = "xl/sharedStrings.xml"
SHARED_STRINGS_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sharedStrings+xml"
SHARED_STRINGS_REL_TYPE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/sharedStrings"

# Elements that follow calcPr in CT_Workbook; calcPr must precede them
_AFTER_CALC_PR = (
    "oleSize", "customWorkbookViews", "pivotCaches", "smartTagPr", "smartTagTypes",
    "webPublishing", "fileRecoveryPr", "webPublishObjects", "extLst",
)


# =============================================================================
# VALUE HELPERS
# =============================================================================

def _values_equal(a, b) -> bool:
    if is_empty_value(a) and is_empty_value(b):
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _format_number(value) -> str:
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return repr(value)
    return str(value)


def _effective_type(cell: Cell) -> CellType:
    """The cell's explicit type when it fits the value, else the inferred kind."""
    inferred = infer_cell_type(cell.value)
    if cell.type is None or cell.type == CellType.EMPTY:
        return inferred
    if cell.type == CellType.ERROR and isinstance(cell.value, str):
        return CellType.ERROR
    return cell.type if cell.type == inferred else inferred


# =============================================================================
# PERSISTED ENTRY EDITING
# =============================================================================

def _child(entry: ET.Element, tag: str) -> Optional[ET.Element]:
    return entry.find(f"{{{NS['main']}}}{tag}")


def _order_children(entry: ET.Element) -> None:
    """Keep <f>, <v>, <is> first and in schema order."""
    ordered = [el for el in (_child(entry, "f"), _child(entry, "v"), _child(entry, "is")) if el is not None]
    rest = [el for el in list(entry) if el not in ordered]
    for el in list(entry):
        entry.remove(el)
    for el in ordered + rest:
        entry.append(el)


def _strip_value(entry: ET.Element) -> None:
    """Remove the cached value, inline string and type marker."""
    for tag in ("v", "is"):
        el = _child(entry, tag)
        if el is not None:
            entry.remove(el)
    entry.attrib.pop("t", None)


def _unshare_group(sheet: SheetPart, si: str, masters: Dict[str, Tuple[int, int, str]]) -> None:
    """Turn every member of a shared-formula group into an explicit formula."""
    ns = NS["main"]
    for (row, col), cell_el in sheet.cells.items():
        f_el = cell_el.find(f"{{{ns}}}f")
        if f_el is None or f_el.get("t") != "shared" or f_el.get("si") != si:
            continue
        text = formula_text(cell_el, row, col, masters)
        if text is None:
            cell_el.remove(f_el)
            continue
        for attr in ("t", "si", "ref"):
            f_el.attrib.pop(attr, None)
        f_el.text = text
    masters.pop(si, None)


def _set_formula(
    sheet: SheetPart,
    entry: ET.Element,
    row: int,
    col: int,
    formula: Optional[str],
    masters: Dict[str, Tuple[int, int, str]],
) -> bool:
    """Write or clear a formula. Returns True when the persisted formula changed."""
    current = formula_text(entry, row, col, masters)
    if current == formula:
        return False

    f_el = _child(entry, "f")
    if f_el is not None and f_el.get("t") == "shared" and f_el.get("si") is not None:
        _unshare_group(sheet, f_el.get("si"), masters)
        f_el = _child(entry, "f")

    if formula is None:
        if f_el is not None:
            entry.remove(f_el)
        return True

    if f_el is None:
        f_el = ET.Element(f"{{{NS['main']}}}f")
        entry.insert(0, f_el)
    for attr in list(f_el.attrib):
        del f_el.attrib[attr]
    f_el.text = formula
    return True


def _set_value(workbook: Workbook, entry: ET.Element, cell: Cell) -> None:
    """Write a non-empty value with the type marker matching its kind."""
    ns = NS["main"]
    is_el = _child(entry, "is")
    if is_el is not None:
        entry.remove(is_el)
    v_el = _child(entry, "v")
    if v_el is None:
        v_el = ET.SubElement(entry, f"{{{ns}}}v")

    value = cell.value
    cell_type = _effective_type(cell)
    if cell_type == CellType.BOOLEAN:
        entry.set("t", "b")
        v_el.text = "1" if value else "0"
    elif cell_type == CellType.NUMBER:
        entry.attrib.pop("t", None)
        v_el.text = _format_number(value)
    elif cell_type == CellType.DATE and isinstance(value, datetime):
        entry.attrib.pop("t", None)
        v_el.text = _format_number(datetime_to_serial(value, workbook.date1904))
    elif cell_type == CellType.ERROR:
        entry.set("t", "e")
        v_el.text = str(value)
    elif _child(entry, "f") is not None:
        # Formula string results are stored inline
        entry.set("t", "str")
        v_el.text = str(value)
    else:
        entry.set("t", "s")
        v_el.text = str(workbook.shared_string_index(str(value)))
    _order_children(entry)


def _row_element(sheet: SheetPart, row: int) -> ET.Element:
    """Find or create the <row> for a zero-based row index, keeping row order."""
    row_el = sheet.rows.get(row)
    if row_el is not None:
        return row_el
    ns = NS["main"]
    sheet_data = sheet.sheet_data()
    row_el = ET.Element(f"{{{ns}}}row", {"r": str(row + 1)})
    position = len(sheet_data)
    for i, existing in enumerate(list(sheet_data)):
        r_attr = existing.get("r")
        if existing.tag == f"{{{ns}}}row" and r_attr and r_attr.isdigit() and int(r_attr) > row + 1:
            position = i
            break
    sheet_data.insert(position, row_el)
    sheet.rows[row] = row_el
    return row_el


def _create_entry(sheet: SheetPart, row: int, col: int) -> ET.Element:
    """Synthesize a minimal <c> entry in column order."""
    ns = NS["main"]
    row_el = _row_element(sheet, row)
    ref = encode_cell(row, col)
    entry = ET.Element(f"{{{ns}}}c", {"r": ref})
    if row_el.get("customFormat") == "1" and row_el.get("s"):
        entry.set("s", row_el.get("s"))

    position = len(row_el)
    for i, existing in enumerate(list(row_el)):
        if existing.tag != f"{{{ns}}}c":
            position = i
            break
        existing_ref = existing.get("r", "")
        letters = re.match(r"[A-Z]+", existing_ref)
        if letters and col_letter_to_index(letters.group(0)) - 1 > col:
            position = i
            break
    row_el.insert(position, entry)

    spans = row_el.get("spans")
    if spans and re.match(r"^\d+:\d+$", spans):
        lo, hi = (int(x) for x in spans.split(":"))
        row_el.set("spans", f"{min(lo, col + 1)}:{max(hi, col + 1)}")

    sheet.cells[(row, col)] = entry
    return entry


def _delete_entry(sheet: SheetPart, row: int, col: int, entry: ET.Element) -> None:
    row_el = sheet.rows.get(row)
    if row_el is not None and entry in list(row_el):
        row_el.remove(entry)
    sheet.cells.pop((row, col), None)


# =============================================================================
# RECONCILIATION
# =============================================================================

def _matches(workbook: Workbook, entry: ET.Element, cell: Cell, formula: Optional[str]) -> bool:
    """Whether the persisted entry already holds the grid cell's content."""
    persisted = decode_persisted_cell(entry, workbook, formula)
    if (persisted.formula or None) != (cell.formula or None):
        return False
    if not _values_equal(persisted.value, cell.value):
        return False
    if is_empty_value(cell.value):
        return True
    return persisted.type == _effective_type(cell)


def reconcile_cell(
    workbook: Workbook,
    sheet: SheetPart,
    row: int,
    col: int,
    cell: Cell,
    masters: Dict[str, Tuple[int, int, str]],
) -> bool:
    """Reconcile one grid cell with its persisted entry. Returns True if anything changed."""
    entry = sheet.persisted_entry(row, col)

    if entry is not None and _matches(workbook, entry, cell, formula_text(entry, row, col, masters)):
        return False

    if is_empty_value(cell.value) and not cell.formula:
        if entry is None:
            return False
        _strip_value(entry)
        if _set_formula(sheet, entry, row, col, None, masters):
            workbook.formulas_changed = True
        if _child(entry, "f") is None:
            _delete_entry(sheet, row, col, entry)
        return True

    if entry is None:
        entry = _create_entry(sheet, row, col)

    if _set_formula(sheet, entry, row, col, cell.formula or None, masters):
        workbook.formulas_changed = True

    if is_empty_value(cell.value):
        _strip_value(entry)
    else:
        _set_value(workbook, entry, cell)
    return True


def sync_sheet(workbook: Workbook, sheet_name: str, grid: SheetGrid) -> int:
    """Write a sheet's grid back into the persisted workbook.

    Visits every grid cell in row-major order; cells outside the grid are
    never touched. Returns the number of persisted entries that changed.
    """
    sheet = workbook.get_sheet(sheet_name)
    if sheet is None:
        return 0

    masters = shared_formula_masters(sheet)
    changed = 0
    for row, col, cell in grid.iter_cells():
        if reconcile_cell(workbook, sheet, row, col, cell, masters):
            changed += 1

    if changed:
        sheet.dirty = True
        logger.info(f"[SYNC] Sheet {sheet_name!r}: {changed} persisted cell(s) updated")
    return changed


# =============================================================================
# ENCODING
# =============================================================================

def _extract_root_tag(xml_bytes: bytes) -> Tuple[bytes, bytes, bytes]:
    """Extract the original root element opening/closing tags from XML.

    Returns:
        (xml_declaration, root_open_tag, root_close_tag)

    ElementTree drops namespace declarations it considers unused, but
    Excel requires them (e.g. for mc:Ignorable), so the original root
    tag is reused verbatim.
    """
    xml_str = xml_bytes.decode("utf-8")

    decl_match = re.match(r"(<\?xml[^?]*\?>)\s*", xml_str)
    if decl_match:
        xml_decl = decl_match.group(1).encode("utf-8")
        rest = xml_str[decl_match.end():]
    else:
        xml_decl = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        rest = xml_str

    root_match = re.match(r"(<[a-zA-Z][^>]*?)(/?)>", rest)
    if root_match:
        root_open = (root_match.group(1) + ">").encode("utf-8")
        tag_name = re.match(r"<([^\s>/]+)", root_match.group(1)).group(1)
    else:
        root_open = b"<worksheet>"
        tag_name = "worksheet"

    root_close = f"</{tag_name}>".encode("utf-8")
    return xml_decl, root_open, root_close


def _declares_default(root_open: bytes, ns: str) -> bool:
    """True if the root tag is unprefixed and makes ns the default namespace."""
    text = root_open.decode("utf-8")
    tag = re.match(r"<([^\s>/]+)", text)
    if tag is None or ":" in tag.group(1):
        return False
    return f'xmlns="{ns}"' in text or f"xmlns='{ns}'" in text


def _serialize_element_inner(element: ET.Element, ns: str, inherit_default: bool = True) -> bytes:
    """Serialize an element's children only, without the root tag.

    When the preserved root tag already declares the default namespace,
    the redundant declaration ElementTree puts on each child is removed.
    Under a prefixed root (e.g. <x:worksheet>) each child keeps its own.
    """
    buffer = BytesIO()
    for child in element:
        child_str = ET.tostring(child, encoding="unicode")
        if inherit_default:
            child_str = child_str.replace(f' xmlns="{ns}"', "", 1)
        buffer.write(child_str.encode("utf-8"))
    return buffer.getvalue()


def _serialize_part(root: ET.Element, original: bytes) -> bytes:
    ns = NS["main"]
    xml_decl, root_open, root_close = _extract_root_tag(original)
    inner = _serialize_element_inner(root, ns, _declares_default(root_open, ns))
    return xml_decl + b"\r\n" + root_open + inner + root_close


def _update_root_attr(root_open: str, name: str, value: str) -> str:
    pattern = rf'\b{name}="[^"]*"'
    if re.search(pattern, root_open):
        return re.sub(pattern, f'{name}="{value}"', root_open)
    return root_open[:-1] + f' {name}="{value}">'


def _shared_strings_part(workbook: Workbook, original: Optional[bytes]) -> bytes:
    """Shared strings XML with the new entries appended.

    Preserves the original root element for Excel compatibility.
    """
    ns = NS["main"]
    if original:
        root = ET.fromstring(original)
    else:
        root = ET.Element(f"{{{ns}}}sst")

    for text, _ in sorted(workbook.new_strings.items(), key=lambda x: x[1]):
        si = ET.SubElement(root, f"{{{ns}}}si")
        t = ET.SubElement(si, f"{{{ns}}}t")
        t.text = text
        if text and (text[0].isspace() or text[-1].isspace()):
            t.set(XML_SPACE, "preserve")

    unique_count = len(root.findall(f"{{{ns}}}si"))
    count = max(int(root.get("count", "0") or 0) + len(workbook.new_strings), unique_count)

    if not original:
        root.set("count", str(count))
        root.set("uniqueCount", str(unique_count))
        body = ET.tostring(root, encoding="unicode")
        return b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\r\n' + body.encode("utf-8")

    xml_decl, root_open, root_close = _extract_root_tag(original)
    root_open_str = root_open.decode("utf-8")
    root_open_str = _update_root_attr(root_open_str, "count", str(count))
    root_open_str = _update_root_attr(root_open_str, "uniqueCount", str(unique_count))
    inner = _serialize_element_inner(root, ns, _declares_default(root_open, ns))
    return xml_decl + b"\r\n" + root_open_str.encode("utf-8") + inner + root_close


def _register_shared_strings(parts: Dict[str, bytes]) -> None:
    """Declare a newly created shared-strings part in content types and workbook rels."""
    content_types = parts.get("[Content_Types].xml")
    if content_types is not None and b"/xl/sharedStrings.xml" not in content_types:
        override = f'<Override PartName="/{SHARED_STRINGS_PATH}" ContentType="{SHARED_STRINGS_CONTENT_TYPE}"/>'
        parts["[Content_Types].xml"] = content_types.replace(b"</Types>", override.encode("utf-8") + b"</Types>")

    rels = parts.get("xl/_rels/workbook.xml.rels")
    if rels is not None and b"sharedStrings.xml" not in rels:
        ids = [int(x) for x in re.findall(rb'Id="rId(\d+)"', rels)]
        rel_id = f"rId{max(ids, default=0) + 1}"
        relationship = f'<Relationship Id="{rel_id}" Type="{SHARED_STRINGS_REL_TYPE}" Target="sharedStrings.xml"/>'
        parts["xl/_rels/workbook.xml.rels"] = rels.replace(
            b"</Relationships>", relationship.encode("utf-8") + b"</Relationships>"
        )


def _request_full_calculation(workbook_xml: bytes) -> bytes:
    """Set calcPr fullCalcOnLoad so formulas are recomputed on open."""
    text = workbook_xml.decode("utf-8")
    calc_match = re.search(r"<calcPr\b[^>]*?/?>", text)
    if calc_match:
        tag = calc_match.group(0)
        if "fullCalcOnLoad=" in tag:
            new_tag = re.sub(r'fullCalcOnLoad="[^"]*"', 'fullCalcOnLoad="1"', tag)
        else:
            new_tag = tag.replace("<calcPr", '<calcPr fullCalcOnLoad="1"', 1)
        return (text[:calc_match.start()] + new_tag + text[calc_match.end():]).encode("utf-8")

    anchor = None
    for name in _AFTER_CALC_PR:
        match = re.search(rf"<{name}\b", text)
        if match:
            anchor = match.start()
            break
    if anchor is None:
        anchor = text.rfind("</workbook>")
    if anchor < 0:
        return workbook_xml
    return (text[:anchor] + '<calcPr fullCalcOnLoad="1"/>' + text[anchor:]).encode("utf-8")


def encode_workbook(workbook: Workbook) -> bytes:
    """Encode the workbook as a deflate-compressed .xlsx archive.

    Does not modify the workbook, so a failed encode can simply be retried.
    """
    try:
        parts = dict(workbook.parts)

        for sheet in workbook.sheets:
            if sheet.dirty:
                parts[sheet.path] = _serialize_part(sheet.root, sheet.raw)

        if workbook.new_strings:
            original_sst = workbook.parts.get(SHARED_STRINGS_PATH)
            parts[SHARED_STRINGS_PATH] = _shared_strings_part(workbook, original_sst)
            if original_sst is None:
                _register_shared_strings(parts)

        if workbook.formulas_changed:
            # The cached calculation chain may name cells that lost their formula
            remove_parts(parts, {"xl/calcChain.xml"})
            parts["xl/workbook.xml"] = _request_full_calculation(parts["xl/workbook.xml"])

        buffer = BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf_out:
            for name, data in parts.items():
                zf_out.writestr(
                    name,
                    data,
                    compress_type=workbook.compress_types.get(name) or zipfile.ZIP_DEFLATED,
                )
    except (ET.ParseError, KeyError, ValueError, UnicodeDecodeError, zipfile.BadZipFile) as e:
        raise SerializeFailure(f"Failed to encode workbook: {e}") from e

    data = buffer.getvalue()
    logger.info(f"[EXPORT] Encoded {workbook.filename}: {len(parts)} parts, {len(data):,} bytes")
    return data
