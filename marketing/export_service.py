"""
Excel Delivery Report for Campaigns

Two sheets per campaign: a Summary of counts and schedule, and the
per-recipient outcome list.

Dependencies: openpyxl
"""

import io
from datetime import datetime

from django.utils import timezone

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment
from openpyxl.utils import get_column_letter

from .campaign_service import recipient_breakdown

XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="25D366", end_color="25D366", fill_type="solid")
WRAP = Alignment(vertical="top", wrap_text=True)
DATETIME_FORMAT = 'yyyy-mm-dd hh:mm'

RECIPIENT_COLUMNS = [
    # (header, width)
    ("Customer", 24),
    ("Phone", 18),
    ("Status", 12),
    ("Attempts", 10),
    ("Last Attempt", 18),
    ("Sent At", 18),
    ("Error", 60),
]


def _excel_value(value):
    # openpyxl rejects aware datetimes
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            value = timezone.localtime(value)
        return value.replace(tzinfo=None)
    return "" if value is None else value


def _write_row(ws, row, values):
    for column, value in enumerate(values, 1):
        cell = ws.cell(row=row, column=column, value=_excel_value(value))
        if isinstance(value, datetime):
            cell.number_format = DATETIME_FORMAT
    return row + 1


def _style_header(ws, widths):
    for column, width in enumerate(widths, 1):
        cell = ws.cell(row=1, column=column)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        ws.column_dimensions[get_column_letter(column)].width = width
    ws.freeze_panes = "A2"


def recipient_outcome(recipient) -> str:
    """Failed rows still inside the retry budget read as Retrying"""
    if recipient.is_permanently_failed:
        return "Failed"
    if recipient.status == recipient.STATUS_FAILED:
        return "Retrying"
    return str(recipient.get_status_display())


class CampaignReport:
    """
    Delivery report workbook for one campaign.

    Usage:
        content = CampaignReport(campaign).to_bytes()
    """

    def __init__(self, campaign):
        self.campaign = campaign
        self.workbook = Workbook()

    def summary_rows(self):
        campaign = self.campaign
        breakdown = recipient_breakdown(campaign)
        return [
            ("Campaign", campaign.id),
            ("Restaurant", campaign.restaurant.name),
            ("Status", str(campaign.get_status_display())),
            ("Audience", str(campaign.get_audience_display())),
            ("Scheduled For", campaign.scheduled_for),
            ("Completed At", campaign.completed_at),
            ("Delay (s)", campaign.delay_seconds),
            ("Total Recipients", campaign.total_recipients),
            ("Sent", campaign.sent_count),
            ("Failed", campaign.failed_count),
            ("Pending", breakdown['pending']),
            ("Retrying", breakdown['retrying']),
            ("Message", campaign.message),
        ]

    def recipient_rows(self):
        recipients = self.campaign.recipients.select_related('customer').order_by('id')
        for recipient in recipients:
            yield (
                recipient.customer.display_name,
                recipient.customer.phone or "",
                recipient_outcome(recipient),
                recipient.retry_count,
                recipient.last_retry_at,
                recipient.sent_at,
                recipient.error_message,
            )

    def _summary_sheet(self):
        ws = self.workbook.active
        ws.title = "Summary"
        row = _write_row(ws, 1, ("Field", "Value"))
        for values in self.summary_rows():
            row = _write_row(ws, row, values)
        _style_header(ws, (22, 60))
        ws.cell(row=row - 1, column=2).alignment = WRAP

    def _recipients_sheet(self):
        ws = self.workbook.create_sheet("Recipients")
        row = _write_row(ws, 1, [header for header, _ in RECIPIENT_COLUMNS])
        for values in self.recipient_rows():
            row = _write_row(ws, row, values)
        _style_header(ws, [width for _, width in RECIPIENT_COLUMNS])

    def to_bytes(self) -> bytes:
        self._summary_sheet()
        self._recipients_sheet()
        buffer = io.BytesIO()
        self.workbook.save(buffer)
        return buffer.getvalue()


def export_campaign_report(campaign) -> bytes:
    """Delivery report for one campaign as .xlsx bytes"""
    return CampaignReport(campaign).to_bytes()


def report_filename(campaign) -> str:
    return f"campaign_{campaign.id}_{timezone.localtime(campaign.scheduled_for):%Y%m%d_%H%M}.xlsx"
