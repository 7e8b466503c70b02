"""Builds real OOXML packages in memory for tests."""

import zipfile
from io import BytesIO


MAIN_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
DOC_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
XML_DECL = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\r\n'

STYLES_XML = XML_DECL + (
    f'<styleSheet xmlns="{MAIN_NS}">'
    '<numFmts count="1"><numFmt numFmtId="164" formatCode="yyyy/mm/dd"/></numFmts>'
    '<fonts count="2">'
    '<font><sz val="11"/><name val="Calibri"/></font>'
    '<font><b/><sz val="14"/><color rgb="FFFF0000"/><name val="Arial"/></font>'
    '</fonts>'
    '<fills count="3">'
    '<fill><patternFill patternType="none"/></fill>'
    '<fill><patternFill patternType="gray125"/></fill>'
    '<fill><patternFill patternType="solid"><fgColor rgb="FFFFFF00"/><bgColor indexed="64"/></patternFill></fill>'
    '</fills>'
    '<borders count="2">'
    '<border><left/><right/><top/><bottom/><diagonal/></border>'
    '<border><left style="thin"/><right style="thin"/><top style="thin"/><bottom style="thin"/><diagonal/></border>'
    '</borders>'
    '<cellXfs count="5">'
    '<xf numFmtId="0" fontId="0" fillId="0" borderId="0"/>'
    '<xf numFmtId="0" fontId="1" fillId="2" borderId="1" applyFont="1" applyFill="1" applyBorder="1">'
    '<alignment horizontal="center"/></xf>'
    '<xf numFmtId="14" fontId="0" fillId="0" borderId="0" applyNumberFormat="1"/>'
    '<xf numFmtId="164" fontId="0" fillId="0" borderId="0" applyNumberFormat="1"/>'
    '<xf numFmtId="0" fontId="0" fillId="2" borderId="0" applyFill="1"/>'
    '</cellXfs>'
    '</styleSheet>'
)

# Style indexes in STYLES_XML
HEADER_STYLE = 1
DATE_STYLE = 2
CUSTOM_DATE_STYLE = 3
FILL_STYLE = 4


def worksheet(rows: str, dimension: str | None = "A1", before_margins: str = "", after_margins: str = "") -> str:
    """A worksheet part with the namespace declarations Excel writes."""
    dim = f'<dimension ref="{dimension}"/>' if dimension is not None else ""
    return XML_DECL + (
        f'<worksheet xmlns="{MAIN_NS}" xmlns:r="{R_NS}" '
        'xmlns:mc="http://schemas.openxmlformats.org/markup-compatibility/2006" mc:Ignorable="x14ac" '
        'xmlns:x14ac="http://schemas.microsoft.com/office/spreadsheetml/2009/9/ac">'
        f'{dim}<sheetViews><sheetView workbookViewId="0"/></sheetViews>'
        '<sheetFormatPr defaultRowHeight="15" x14ac:dyDescent="0.25"/>'
        f'<sheetData>{rows}</sheetData>{before_margins}'
        '<pageMargins left="0.7" right="0.7" top="0.75" bottom="0.75" header="0.3" footer="0.3"/>'
        f'{after_margins}</worksheet>'
    )


def shared_strings_xml(strings: list[str]) -> str:
    items = "".join(f"<si><t>{s}</t></si>" for s in strings)
    return XML_DECL + f'<sst xmlns="{MAIN_NS}" count="{len(strings)}" uniqueCount="{len(strings)}">{items}</sst>'


def build_xlsx(
    sheets: list[tuple],
    shared_strings: list[str] | None = None,
    styles: str | None = STYLES_XML,
    date1904: bool = False,
    calc_chain: str | None = None,
    sheet_rels: dict[int, str] | None = None,
    extra_parts: dict[str, bytes] | None = None,
    extra_overrides: list[tuple[str, str]] | None = None,
    workbook_content_type: str = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml",
) -> bytes:
    """Assemble an .xlsx package.

    ``sheets`` holds (name, worksheet_xml) or (name, worksheet_xml, state).
    """
    sheet_rels = sheet_rels or {}
    overrides = [("/xl/workbook.xml", workbook_content_type)]
    rels = []
    sheet_entries = []
    parts: dict[str, str | bytes] = {}

    for i, sheet in enumerate(sheets, start=1):
        name, xml = sheet[0], sheet[1]
        state = f' state="{sheet[2]}"' if len(sheet) > 2 else ""
        overrides.append((
            f"/xl/worksheets/sheet{i}.xml",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml",
        ))
        rels.append((f"rId{i}", "worksheet", f"worksheets/sheet{i}.xml"))
        sheet_entries.append(f'<sheet name="{name}" sheetId="{i}"{state} r:id="rId{i}"/>')
        parts[f"xl/worksheets/sheet{i}.xml"] = xml
        if i in sheet_rels:
            parts[f"xl/worksheets/_rels/sheet{i}.xml.rels"] = sheet_rels[i]

    next_id = len(sheets) + 1
    if styles is not None:
        overrides.append(("/xl/styles.xml", "application/vnd.openxmlformats-officedocument.spreadsheetml.styles+xml"))
        rels.append((f"rId{next_id}", "styles", "styles.xml"))
        parts["xl/styles.xml"] = styles
        next_id += 1
    if shared_strings is not None:
        overrides.append((
            "/xl/sharedStrings.xml",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sharedStrings+xml",
        ))
        rels.append((f"rId{next_id}", "sharedStrings", "sharedStrings.xml"))
        parts["xl/sharedStrings.xml"] = shared_strings_xml(shared_strings)
        next_id += 1
    if calc_chain is not None:
        overrides.append(("/xl/calcChain.xml", "application/vnd.openxmlformats-officedocument.spreadsheetml.calcChain+xml"))
        rels.append((f"rId{next_id}", "calcChain", "calcChain.xml"))
        parts["xl/calcChain.xml"] = calc_chain
        next_id += 1
    overrides.extend(extra_overrides or [])

    content_types = XML_DECL + (
        '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
        '<Default Extension="xml" ContentType="application/xml"/>'
        '<Default Extension="png" ContentType="image/png"/>'
        + "".join(f'<Override PartName="{p}" ContentType="{c}"/>' for p, c in overrides)
        + '</Types>'
    )
    root_rels = XML_DECL + (
        '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
        f'<Relationship Id="rId1" Type="{DOC_REL}/officeDocument" Target="xl/workbook.xml"/>'
        '</Relationships>'
    )
    workbook_pr = '<workbookPr date1904="1"/>' if date1904 else '<workbookPr defaultThemeVersion="164011"/>'
    workbook = XML_DECL + (
        f'<workbook xmlns="{MAIN_NS}" xmlns:r="{R_NS}">{workbook_pr}'
        f'<sheets>{"".join(sheet_entries)}</sheets><calcPr calcId="191029"/></workbook>'
    )
    workbook_rels = XML_DECL + (
        '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
        + "".join(f'<Relationship Id="{i}" Type="{DOC_REL}/{t}" Target="{target}"/>' for i, t, target in rels)
        + '</Relationships>'
    )

    ordered = {
        "[Content_Types].xml": content_types,
        "_rels/.rels": root_rels,
        "xl/workbook.xml": workbook,
        "xl/_rels/workbook.xml.rels": workbook_rels,
        **parts,
        **(extra_parts or {}),
    }
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in ordered.items():
            zf.writestr(name, data.encode("utf-8") if isinstance(data, str) else data)
    return buffer.getvalue()


def read_part(xlsx: bytes, name: str) -> bytes:
    with zipfile.ZipFile(BytesIO(xlsx)) as zf:
        return zf.read(name)


def part_names(xlsx: bytes) -> list[str]:
    with zipfile.ZipFile(BytesIO(xlsx)) as zf:
        return zf.namelist()


# =============================================================================
# SAMPLE WORKBOOK
# =============================================================================

QUOTE_STRINGS = ["Item", "Qty", "Price", "Apple", "Pear", "Total", "Merged title"]

QUOTE_ROWS = (
    '<row r="1" spans="1:3">'
    f'<c r="A1" t="s"><v>0</v></c><c r="B1" s="{HEADER_STYLE}" t="s"><v>1</v></c><c r="C1" t="s"><v>2</v></c>'
    '</row>'
    '<row r="2" spans="1:3">'
    '<c r="A2" t="s"><v>3</v></c><c r="B2"><v>3</v></c><c r="C2"><v>1.5</v></c>'
    '</row>'
    '<row r="3" spans="1:3">'
    '<c r="A3" t="s"><v>4</v></c><c r="B3"><v>2</v></c><c r="C3"><v>2.25</v></c>'
    '</row>'
    '<row r="4" spans="1:3">'
    f'<c r="A4" s="{HEADER_STYLE}" t="s"><v>5</v></c><c r="B4"><f>SUM(B2:B3)</f><v>5</v></c>'
    f'<c r="C4" s="{FILL_STYLE}"/>'
    '</row>'
)

DETAILS_ROWS = (
    '<row r="1">'
    f'<c r="A1" s="{HEADER_STYLE}" t="s"><v>6</v></c><c r="B1" s="{HEADER_STYLE}"/>'
    '</row>'
    '<row r="2">'
    f'<c r="A2" s="{DATE_STYLE}"><v>45292</v></c><c r="B2" t="b"><v>1</v></c><c r="C2" t="e"><v>#DIV/0!</v></c>'
    '</row>'
)

CALC_CHAIN = XML_DECL + f'<calcChain xmlns="{MAIN_NS}"><c r="B4" i="1"/></calcChain>'


def quote_workbook() -> bytes:
    return build_xlsx(
        [
            ("Quote", worksheet(QUOTE_ROWS, "A1:C4")),
            ("Details", worksheet(
                DETAILS_ROWS, "A1:C2",
                before_margins='<mergeCells count="1"><mergeCell ref="A1:B1"/></mergeCells>',
            )),
        ],
        shared_strings=QUOTE_STRINGS,
        calc_chain=CALC_CHAIN,
    )
