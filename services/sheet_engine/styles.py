"""Style table parsing and display-style decoding.

``parse_styles`` reads styles.xml into raw records (plain dicts, one table
per record kind). ``decode_style`` turns one resolved raw record into a
CellStyle. Decoding is total: malformed or unknown sub-records are ignored.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional
from xml.etree import ElementTree as ET

from .schemas import CellStyle, StyleTable


MAIN_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"

BORDER_DECLARATION = "1px solid #000000"

# Legacy indexed palette. 0-7 are the base colors, 8-15 repeat them,
# 16-63 are the standard extended entries. 64/65 (system colors) are absent.
_BASE_PALETTE = [
    "000000", "FFFFFF", "FF0000", "00FF00", "0000FF", "FFFF00", "FF00FF", "00FFFF",
]
INDEXED_PALETTE = _BASE_PALETTE + _BASE_PALETTE + [
    "800000", "008000", "000080", "808000", "800080", "008080", "C0C0C0", "808080",
    "9999FF", "993366", "FFFFCC", "CCFFFF", "660066", "FF8080", "0066CC", "CCCCFF",
    "000080", "FF00FF", "FFFF00", "00FFFF", "800080", "800000", "008080", "0000FF",
    "00CCFF", "CCFFFF", "CCFFCC", "FFFF99", "99CCFF", "FF99CC", "CC99FF", "FFCC99",
    "3366FF", "33CCCC", "99CC00", "FFCC00", "FF9900", "FF6600", "666699", "969696",
    "003366", "339966", "003300", "333300", "993300", "993366", "333399", "333333",
]

# Built-in number format ids that render as dates or times.
_BUILTIN_DATE_FORMATS = set(range(14, 23)) | set(range(27, 37)) | {45, 46, 47} | set(range(50, 59))

_HEX_RE = re.compile(r"^[0-9A-Fa-f]{6}$")


# =============================================================================
# PARSING
# =============================================================================

def _flag(el: Optional[ET.Element]) -> bool:
    """<b/>, <b val="1"/> are on; <b val="0"/> is off."""
    if el is None:
        return False
    return el.get("val", "1").lower() not in ("0", "false")


def _color_record(el: Optional[ET.Element]) -> Optional[Dict[str, Any]]:
    if el is None:
        return None
    record: Dict[str, Any] = {}
    for attr in ("rgb", "indexed", "theme", "tint", "auto"):
        if el.get(attr) is not None:
            record[attr] = el.get(attr)
    return record or None


def parse_styles(xml_bytes: Optional[bytes]) -> StyleTable:
    """Parse styles.xml into a StyleTable. Missing input yields an empty table."""
    table = StyleTable()
    if not xml_bytes:
        return table

    root = ET.fromstring(xml_bytes)
    ns = MAIN_NS

    fonts_el = root.find(f"{{{ns}}}fonts")
    if fonts_el is not None:
        for font_el in fonts_el.findall(f"{{{ns}}}font"):
            font: Dict[str, Any] = {}
            name_el = font_el.find(f"{{{ns}}}name")
            if name_el is not None and name_el.get("val"):
                font["name"] = name_el.get("val")
            sz_el = font_el.find(f"{{{ns}}}sz")
            if sz_el is not None and sz_el.get("val"):
                font["size"] = sz_el.get("val")
            if _flag(font_el.find(f"{{{ns}}}b")):
                font["bold"] = True
            if _flag(font_el.find(f"{{{ns}}}i")):
                font["italic"] = True
            u_el = font_el.find(f"{{{ns}}}u")
            if u_el is not None and u_el.get("val", "single") != "none":
                font["underline"] = True
            color = _color_record(font_el.find(f"{{{ns}}}color"))
            if color:
                font["color"] = color
            table.fonts.append(font)

    fills_el = root.find(f"{{{ns}}}fills")
    if fills_el is not None:
        for fill_el in fills_el.findall(f"{{{ns}}}fill"):
            fill: Dict[str, Any] = {}
            pattern_el = fill_el.find(f"{{{ns}}}patternFill")
            if pattern_el is not None:
                fill["patternType"] = pattern_el.get("patternType")
                fg = _color_record(pattern_el.find(f"{{{ns}}}fgColor"))
                bg = _color_record(pattern_el.find(f"{{{ns}}}bgColor"))
                if fg:
                    fill["fgColor"] = fg
                if bg:
                    fill["bgColor"] = bg
            table.fills.append(fill)

    borders_el = root.find(f"{{{ns}}}borders")
    if borders_el is not None:
        for border_el in borders_el.findall(f"{{{ns}}}border"):
            border: Dict[str, Any] = {}
            for side in ("left", "right", "top", "bottom"):
                side_el = border_el.find(f"{{{ns}}}{side}")
                if side_el is not None and side_el.get("style"):
                    border[side] = {
                        "style": side_el.get("style"),
                        "color": _color_record(side_el.find(f"{{{ns}}}color")),
                    }
            table.borders.append(border)

    cell_xfs_el = root.find(f"{{{ns}}}cellXfs")
    if cell_xfs_el is not None:
        for xf in cell_xfs_el.findall(f"{{{ns}}}xf"):
            xf_dict: Dict[str, Any] = {}
            for key in ("fontId", "fillId", "borderId", "numFmtId"):
                raw = xf.get(key, "0")
                xf_dict[key] = int(raw) if raw.isdigit() else 0
            alignment_el = xf.find(f"{{{ns}}}alignment")
            if alignment_el is not None:
                xf_dict["alignment"] = {
                    "horizontal": alignment_el.get("horizontal"),
                    "vertical": alignment_el.get("vertical"),
                }
            table.cell_xfs.append(xf_dict)

    num_fmts_el = root.find(f"{{{ns}}}numFmts")
    if num_fmts_el is not None:
        for num_fmt in num_fmts_el.findall(f"{{{ns}}}numFmt"):
            fmt_id = num_fmt.get("numFmtId", "")
            if fmt_id.isdigit():
                table.number_formats[int(fmt_id)] = num_fmt.get("formatCode", "")

    return table


def is_date_format(fmt_id: int, fmt_code: Optional[str] = None) -> bool:
    """Whether a number format renders its value as a date or time."""
    if fmt_code is None:
        return fmt_id in _BUILTIN_DATE_FORMATS
    # Drop literals, escapes and bracketed colors/locales before looking for date tokens
    code = re.sub(r'"[^"]*"', "", fmt_code)
    code = re.sub(r"\\.", "", code)
    code = re.sub(r"\[(?![hms]+\])[^\]]*\]", "", code, flags=re.IGNORECASE)
    code = code.split(";")[0]
    return bool(re.search(r"[dmyhs]", code, re.IGNORECASE))


# =============================================================================
# DECODING
# =============================================================================

def resolve_color(color: Any) -> Optional[str]:
    """Resolve an rgb/indexed color record to "#RRGGBB", or None.

    ARGB values lose their alpha byte. Theme colors and palette indices
    outside the table resolve to None.
    """
    if not isinstance(color, dict):
        return None
    rgb = color.get("rgb")
    if isinstance(rgb, str):
        rgb = rgb.strip()
        if len(rgb) == 8:
            rgb = rgb[2:]
        if _HEX_RE.match(rgb):
            return f"#{rgb.upper()}"
        return None
    indexed = color.get("indexed")
    if isinstance(indexed, str) and indexed.strip().isdigit():
        indexed = int(indexed)
    if isinstance(indexed, int) and not isinstance(indexed, bool):
        if 0 <= indexed < len(INDEXED_PALETTE):
            return f"#{INDEXED_PALETTE[indexed]}"
    return None


def _font_size(size: Any) -> Optional[str]:
    try:
        value = float(size)
    except (TypeError, ValueError):
        return None
    return f"{value:g}px"


def decode_style(raw: Optional[Dict[str, Any]]) -> CellStyle:
    """Decode one raw style record into a display CellStyle. Never raises."""
    style = CellStyle()
    if not isinstance(raw, dict):
        return style

    # Background: fill foreground first, fill background only as a fallback
    fill = raw.get("fill")
    if isinstance(fill, dict):
        background = resolve_color(fill.get("fgColor"))
        if background is None:
            background = resolve_color(fill.get("bgColor"))
        style.background_color = background

    font = raw.get("font")
    if isinstance(font, dict):
        style.color = resolve_color(font.get("color"))
        if font.get("bold"):
            style.bold = True
        if font.get("italic"):
            style.italic = True
        if font.get("underline"):
            style.underline = True
        if font.get("size") is not None:
            style.font_size = _font_size(font.get("size"))
        if isinstance(font.get("name"), str) and font["name"]:
            style.font_family = font["name"]

    alignment = raw.get("alignment")
    if isinstance(alignment, dict) and isinstance(alignment.get("horizontal"), str):
        style.text_align = alignment["horizontal"]

    border = raw.get("border")
    if isinstance(border, dict):
        for side in ("top", "bottom", "left", "right"):
            edge = border.get(side)
            if isinstance(edge, dict) and edge.get("style"):
                setattr(style, f"border_{side}", BORDER_DECLARATION)

    return style
