"""
Report file renderer.

Produces deterministic artifact paths and download URLs. The rendering
backend itself (PDF/Excel layout) is a placeholder.
"""

from datetime import date

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.domain.models import ReportFormat, ReportType
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_EXTENSIONS = {
    ReportFormat.PDF: "pdf",
    ReportFormat.EXCEL: "xlsx",
    ReportFormat.CSV: "csv",
    ReportFormat.HTML: "html",
}

_FOLDERS = {
    ReportType.DAILY_SUMMARY: "daily",
    ReportType.WEEKLY_SUMMARY: "weekly",
}


class ReportFileRenderer:
    def __init__(self, public_url: str):
        self.public_url = public_url.rstrip("/")

    async def render(
        self, report_type: ReportType, identifier: date, output_format: ReportFormat
    ) -> dict[str, str]:
        extension = _EXTENSIONS.get(output_format)
        if extension is None:
            raise JobValidationError(f"Format {output_format.value} is not rendered to a file")

        folder = _FOLDERS[report_type]
        file_name = f"{folder}-summary-{identifier.isoformat()}.{extension}"
        result = {
            "file_path": f"/reports/{folder}/{file_name}",
            "file_url": f"{self.public_url}/api/reports/download/{file_name}",
        }

        logger.info(
            "Report file rendered",
            report_type=report_type.value,
            format=output_format.value,
            file_path=result["file_path"],
        )
        return result
