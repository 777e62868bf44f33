from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import Settings
from .models import OrderRecord

logger = logging.getLogger("order_bridge.sheets")

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def order_to_row(record: OrderRecord, received_at: Optional[datetime] = None) -> List[str]:
    """Column order of the orders sheet: date, name, phone, address, items, total, status."""
    stamp = (received_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return [
        stamp,
        record.customer_name,
        record.phone_number,
        record.address,
        record.items,
        record.total,
        record.status,
    ]


class SheetsOrderSink:
    """Appends confirmed orders as rows of a Google Sheets range."""

    def __init__(
        self,
        spreadsheet_id: str,
        sheet_range: str,
        credentials_path: Optional[Path] = None,
        service: Optional[Any] = None,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._range = sheet_range
        self._credentials_path = credentials_path
        self._service = service

    @classmethod
    def from_settings(cls, settings: Settings) -> "SheetsOrderSink":
        return cls(
            spreadsheet_id=settings.sheets_spreadsheet_id,
            sheet_range=settings.sheets_range,
            credentials_path=settings.google_credentials_path,
        )

    async def append_order(self, record: OrderRecord) -> bool:
        """Purpose: Persist one confirmed order as a new sheet row.
        Inputs/Outputs: Input is an OrderRecord; returns True when the append was accepted.
        Side Effects / State: Lazily builds the Sheets service; network call off the loop.
        Dependencies: google-api-python-client and service-account credentials.
        Failure Modes: API errors and a missing spreadsheet id return False; missing
            credentials raise RuntimeError.
        If Removed: Confirmed orders exist only in logs.
        Testing Notes: Inject a fake service object and assert the appended values.
        """
        # The client library is synchronous, so the call runs in a worker thread.
        if not self._spreadsheet_id:
            logger.error("[Sheets] SHEETS_SPREADSHEET_ID is not configured.")
            return False
        row = order_to_row(record)
        try:
            return await asyncio.to_thread(self._append_row, row)
        except HttpError as exc:
            logger.error("[Sheets] Append rejected: %s", exc)
            return False

    def _append_row(self, row: List[str]) -> bool:
        response = (
            self._get_service()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=self._range,
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [row]},
            )
            .execute()
        )
        updates = (response or {}).get("updates", {})
        return int(updates.get("updatedRows", 0) or 0) > 0

    def _get_service(self) -> Any:
        if self._service is None:
            if self._credentials_path is None:
                raise RuntimeError("GOOGLE_APPLICATION_CREDENTIALS is not configured")
            credentials = Credentials.from_service_account_file(
                str(self._credentials_path), scopes=SHEETS_SCOPES
            )
            self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return self._service
