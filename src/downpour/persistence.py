import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from .models import Report

logger = logging.getLogger(__name__)


class ReportStore:
    def __init__(self, report_file: str = "downpour_report.json"):
        self.report_file = report_file

    def save_report(self, report: Report, label: str | None = None) -> str:
        payload = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "label": label,
            "report": report.to_dict(),
        }
        directory = os.path.dirname(self.report_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.report_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        logger.info(f"Report saved to {self.report_file}")
        return self.report_file

    def load_report(self) -> dict[str, Any] | None:
        if not os.path.exists(self.report_file):
            logger.info(f"No report file at {self.report_file}")
            return None
        with open(self.report_file, encoding="utf-8") as f:
            return json.load(f)
