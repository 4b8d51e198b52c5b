import csv
from io import StringIO, BytesIO

from flask import Response, current_app
from openpyxl import Workbook
from openpyxl.styles import Font
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import cm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from .time_helpers import now_local

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
THAI_FONT = "ThaiFont"


def _download(data, mimetype, filename):
    stem, _, ext = filename.rpartition(".")
    stamped = f"{stem}_{now_local().strftime('%Y%m%d_%H%M')}.{ext}"
    return Response(data, mimetype=mimetype,
                    headers={"Content-Disposition": f"attachment; filename={stamped}"})


def _cell(value):
    return "" if value is None else value


def stream_csv(filename, headers, rows):
    buf = StringIO()
    w = csv.writer(buf)
    if headers:
        w.writerow(headers)
    w.writerows([_cell(v) for v in r] for r in rows)
    # BOM para que Excel abra el tailandés correctamente
    return _download(buf.getvalue().encode("utf-8-sig"), "text/csv", filename)


def stream_xlsx(filename, headers, rows, sheet_title="Report"):
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title[:31]
    if headers:
        ws.append(headers)
        for c in ws[1]:
            c.font = Font(bold=True)
        ws.freeze_panes = "A2"
    for r in rows:
        ws.append([_cell(v) for v in r])
    for col in ws.columns:
        longest = max((len(str(c.value)) for c in col if c.value is not None), default=8)
        ws.column_dimensions[col[0].column_letter].width = min(max(longest + 2, 8), 60)
    bio = BytesIO()
    wb.save(bio)
    return _download(bio.getvalue(), XLSX_MIMETYPE, filename)


def _pdf_fonts():
    """Nombres de fuente (normal, negrita); para el tailandés hace falta un TTF en PDF_FONT_PATH."""
    path = current_app.config.get("PDF_FONT_PATH")
    if not path:
        return "Helvetica", "Helvetica-Bold"
    if THAI_FONT not in pdfmetrics.getRegisteredFontNames():
        pdfmetrics.registerFont(TTFont(THAI_FONT, path))
    return THAI_FONT, THAI_FONT


def stream_pdf(filename, title, headers, rows):
    regular, bold = _pdf_fonts()
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=landscape(A4))
    width, height = landscape(A4)
    col_width = (width - 4*cm) / max(len(headers or []), 1)

    def header(y):
        c.setFont(bold, 10)
        for i, h in enumerate(headers or []):
            c.drawString(2*cm + i*col_width, y, str(h)[:40])
        c.setFont(regular, 9)
        return y - 0.6*cm

    c.setFont(bold, 14)
    c.drawString(2*cm, height - 2*cm, f"{title}  ({now_local().strftime('%d/%m/%Y %H:%M')})")
    y = header(height - 2.8*cm)
    for row in rows:
        if y < 2*cm:
            c.showPage()
            y = header(height - 2*cm)
        for i, cell in enumerate(row):
            c.drawString(2*cm + i*col_width, y, str(_cell(cell))[:50])
        y -= 0.5*cm

    c.showPage()
    c.save()
    return _download(buf.getvalue(), "application/pdf", filename)
