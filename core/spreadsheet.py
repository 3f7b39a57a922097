#!/usr/bin/env python3
"""
Spreadsheet input and output for batches.

Reads consumer numbers from uploaded workbooks and materializes batch results
as an .xlsx file (pandas with the openpyxl engine).
"""

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import pandas as pd

from .errors import ExportFailure, InvalidIdentifier
from .models import Batch, Outcome

logger = logging.getLogger(__name__)

RESULTS_SHEET = "MGVCL Billing Data"
TEMPLATE_NAME = "consumer_numbers_template.xlsx"
TEMPLATE_HEADER = "Consumer Number"
TEMPLATE_ROWS = ["12345678901", "98765432109", "11223344556"]

RESULT_COLUMNS = [
    "Consumer Name",
    "Consumer No.",
    "Last Paid Detail",
    "Outstanding Amount (Tentative)",
    "Bill Date",
    "Amount to Pay",
    "Status",
    "Error Message",
]

_AMOUNT = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


def parse_amount(text: str) -> float:
    """Pull the first number out of an amount string like 'Rs. 1,234.50'."""
    match = _AMOUNT.search(text or "")
    if not match:
        return 0.0
    return float(match.group(0).replace(",", ""))


class ExcelProcessor:
    """
    Workbook reader/writer for consumer batches.

    Features:
    - First column of the first sheet as input, header row skipped
    - One result row per item, in input order
    - Template generation and results-directory cleanup
    """

    def __init__(self, results_dir: Union[str, Path] = "./results"):
        self.results_dir = Path(results_dir)
        self.results_dir.mkdir(parents=True, exist_ok=True)

    def read_identifiers(self, path: Union[str, Path]) -> List[Any]:
        """
        Raw consumer number cells from the first column of the first sheet.

        Values are returned as read (str, int or float); normalization is the
        dispatcher's job.
        """
        try:
            frame = pd.read_excel(path, sheet_name=0, header=0, dtype=object)
        except Exception as e:
            raise InvalidIdentifier(f"Could not read workbook: {e}") from e

        if frame.shape[1] == 0:
            return []
        values = frame.iloc[:, 0].tolist()
        logger.info(f"[Excel] Read {len(values)} rows from {Path(path).name}")
        return values

    def build_rows(self, outcomes: Iterable[Outcome]) -> List[Dict[str, str]]:
        rows = []
        for outcome in outcomes:
            record = outcome.record if outcome.ok else None
            rows.append({
                "Consumer Name": record.consumer_name if record else "",
                "Consumer No.": record.consumer_no if record else outcome.identifier,
                "Last Paid Detail": record.last_paid_detail if record else "",
                "Outstanding Amount (Tentative)": record.outstanding_amount if record else "",
                "Bill Date": record.bill_date if record else "",
                "Amount to Pay": record.amount_to_pay if record else "",
                "Status": "Success" if outcome.ok else "Error",
                "Error Message": "" if outcome.ok else (outcome.error or ""),
            })
        return rows

    def materialize(self, batch: Batch) -> Path:
        """
        Write the batch outcomes to a new workbook.

        Returns:
            Path of the written file

        Raises:
            ExportFailure: the workbook could not be written
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.results_dir / f"MGVCL_Results_{batch.batch_id}_{timestamp}.xlsx"
        frame = pd.DataFrame(self.build_rows(batch.ordered_outcomes()), columns=RESULT_COLUMNS)

        try:
            with pd.ExcelWriter(path, engine="openpyxl") as writer:
                frame.to_excel(writer, sheet_name=RESULTS_SHEET, index=False)
                sheet = writer.sheets[RESULTS_SHEET]
                for i, column in enumerate(RESULT_COLUMNS):
                    width = max([len(column)] + [len(str(v)) for v in frame[column]])
                    sheet.column_dimensions[chr(ord("A") + i)].width = min(width + 2, 50)
        except Exception as e:
            raise ExportFailure(f"Could not write results workbook: {e}") from e

        logger.info(f"[Excel] Wrote {len(frame)} rows to {path.name}")
        return path

    def create_template(self, directory: Union[str, Path, None] = None) -> Path:
        """Sample input workbook with a header and illustrative rows."""
        target = Path(directory) if directory else self.results_dir
        target.mkdir(parents=True, exist_ok=True)
        path = target / TEMPLATE_NAME
        frame = pd.DataFrame({TEMPLATE_HEADER: TEMPLATE_ROWS})
        frame.to_excel(path, index=False, engine="openpyxl")
        return path

    @staticmethod
    def get_statistics(outcomes: Iterable[Outcome]) -> Dict[str, Any]:
        outcomes = list(outcomes)
        successful = [o for o in outcomes if o.ok]
        total_amount = sum(parse_amount(o.record.amount_to_pay) for o in successful)
        return {
            "total": len(outcomes),
            "successful": len(successful),
            "failed": len(outcomes) - len(successful),
            "total_amount": round(total_amount, 2),
        }

    def cleanup_old_files(self, max_age_hours: float = 24) -> int:
        """Delete result workbooks older than max_age_hours."""
        cutoff = time.time() - max_age_hours * 3600
        removed = 0
        for path in self.results_dir.glob("MGVCL_Results_*.xlsx"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning(f"[Excel] Could not remove {path.name}: {e}")
        if removed:
            logger.info(f"[Excel] Removed {removed} old result file(s)")
        return removed
