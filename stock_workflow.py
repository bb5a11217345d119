"""
Stock-out workflow: select order -> scan items -> capture photo -> submit.

The scan session controller owns the scan log; this module only moves between
steps, enforces the step preconditions and hands the finished log to a
submission sink exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from scan_aggregation import AggregatedLine, aggregated_to_dicts
from scan_validation import OrderDemandSnapshot, ScanEvent
from stock_scanner import ScanSessionController


class WorkflowError(RuntimeError):
    """A step was attempted before its preconditions were met."""


class WorkflowStep(Enum):
    SELECT_ORDER = "select_order"
    SCAN_ITEMS = "scan_items"
    CAPTURE_IMAGE = "capture_image"
    SUBMIT = "submit"


@dataclass
class StockSubmission:
    session_id: str
    order_id: Optional[str]
    invoice_number: str
    movement_type: str
    events: List[ScanEvent]
    lines: List[AggregatedLine]
    image_base64: Optional[str] = None

    def batch_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "orderId": self.order_id,
            "scannedItems": [e.to_dict() for e in self.events],
        }

    def submit_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "orderId": self.order_id,
            "invoiceNumber": self.invoice_number,
            "imageBase64": self.image_base64,
            "movementType": self.movement_type,
        }

    def summary(self) -> List[Dict[str, Any]]:
        return aggregated_to_dicts(self.lines)


class StockOutWorkflow:
    def __init__(self, controller: Optional[ScanSessionController] = None):
        self.controller = controller or ScanSessionController()
        self.step = WorkflowStep.SELECT_ORDER
        self.image_base64: Optional[str] = None
        self.submitted: bool = False

    @property
    def session_id(self) -> Optional[str]:
        return self.controller.session_id

    @property
    def snapshot(self) -> Optional[OrderDemandSnapshot]:
        return self.controller.snapshot

    def _require(self, *steps: WorkflowStep):
        if self.step not in steps:
            names = ", ".join(s.value for s in steps)
            raise WorkflowError(f"Not allowed in step {self.step.value} (expected {names})")

    def select_order(self, snapshot: Optional[OrderDemandSnapshot]) -> str:
        """Start scanning against an order snapshot, or a custom order when None."""
        self._require(WorkflowStep.SELECT_ORDER)
        session_id = self.controller.start(snapshot)
        self.image_base64 = None
        self.submitted = False
        self.step = WorkflowStep.SCAN_ITEMS
        return session_id

    def proceed_to_capture(self):
        self._require(WorkflowStep.SCAN_ITEMS)
        if not self.controller.events:
            raise WorkflowError("No items scanned")
        self.controller.log("Transitioning to image capture step")
        self.controller.close()
        self.step = WorkflowStep.CAPTURE_IMAGE

    def attach_image(self, image_base64: Optional[str]):
        self._require(WorkflowStep.CAPTURE_IMAGE, WorkflowStep.SUBMIT)
        self.image_base64 = image_base64 or None

    def attach_image_file(self, path):
        from image_store import encode_image_file

        self.attach_image(encode_image_file(path))

    def proceed_to_submit(self):
        self._require(WorkflowStep.CAPTURE_IMAGE)
        self.controller.log("Proceeding to submit step")
        self.step = WorkflowStep.SUBMIT

    def back(self):
        """Step back one screen; returning to scanning reopens the session."""
        if self.step is WorkflowStep.SUBMIT:
            self.step = WorkflowStep.CAPTURE_IMAGE
        elif self.step is WorkflowStep.CAPTURE_IMAGE:
            self.controller.reopen()
            self.step = WorkflowStep.SCAN_ITEMS
        else:
            raise WorkflowError(f"Cannot go back from {self.step.value}")

    def build_submission(self, invoice_number: str) -> StockSubmission:
        if not invoice_number or not invoice_number.strip():
            raise WorkflowError("Invoice number is required")
        events = list(self.controller.events)
        if not events:
            raise WorkflowError("No items scanned")
        snapshot = self.controller.snapshot
        return StockSubmission(
            session_id=self.controller.session_id,
            order_id=snapshot.order_id if snapshot else None,
            invoice_number=invoice_number.strip(),
            movement_type="OUT" if snapshot else "CUSTOM",
            events=events,
            lines=self.controller.aggregated,
            image_base64=self.image_base64,
        )

    def submit(self, sink, invoice_number: str) -> Dict[str, Any]:
        self._require(WorkflowStep.SUBMIT)
        if self.submitted:
            raise WorkflowError("Session already submitted")
        submission = self.build_submission(invoice_number)
        self.controller.log(
            f"Submitting stock movement - Invoice: {submission.invoice_number}, Items: {len(submission.events)}"
        )
        try:
            result = sink.submit(submission)
        except Exception as e:
            self.controller.log(f"Submit error: {e}")
            raise
        self.submitted = True
        self.controller.log("Submit successful! Stock movement created.")
        return result

    def abandon(self) -> str:
        """Drop the current session and go back to order selection."""
        self.controller.log("Resetting workflow - returning to order selection")
        new_id = self.controller.reset()
        self.controller.close()
        self.image_base64 = None
        self.submitted = False
        self.step = WorkflowStep.SELECT_ORDER
        return new_id


class DatabaseSubmissionSink:
    """Submit straight into the local SQLite store."""

    def __init__(self, user_id: str = "warehouse", image_store=None):
        self.user_id = user_id
        self.image_store = image_store

    def load_snapshot(self, order_id: str) -> OrderDemandSnapshot:
        """Demand snapshot for an order that is still PENDING.

        LookupError when the order does not exist, ValueError when it was
        completed or cancelled.
        """
        import database_schema

        database_schema.init_database()
        order = database_schema.require_open_order(order_id)
        return database_schema.snapshot_from_order(order)

    def submit(self, submission: StockSubmission) -> Dict[str, Any]:
        import database_schema

        database_schema.init_database()
        if submission.order_id:
            database_schema.require_open_order(submission.order_id)
        database_schema.save_scanned_batch(
            submission.session_id, self.user_id, submission.order_id, submission.events
        )
        database_schema.check_submission(submission.session_id, submission.order_id)
        image_url = None
        if submission.image_base64 and self.image_store is not None:
            image_url = self.image_store.save(submission.image_base64)
        try:
            movements = database_schema.create_stock_movement(
                submission.session_id,
                self.user_id,
                submission.order_id,
                submission.invoice_number,
                image_url,
                submission.movement_type,
            )
        except Exception:
            if image_url:
                self.image_store.discard(image_url)
            raise
        return {
            "success": True,
            "message": f"Stock movement completed. {len(movements)} item(s) processed.",
            "movements": movements,
            "imageUrl": image_url,
        }


class HttpSubmissionSink:
    """Submit through the stock API: batch-save the scan log, then submit."""

    def __init__(self, base_url: str, user_id: str = "warehouse", password: Optional[str] = None,
                 timeout_seconds: int = 15):
        self.base_url = (base_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("base_url is required")
        self.user_id = user_id
        self.password = password
        self.timeout = max(1, int(timeout_seconds or 15))
        self.session = requests.Session()
        self._logged_in = False

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-User-Id": self.user_id,
        }

    def _login(self):
        if self._logged_in or not self.password:
            return
        self._post("/api/auth/login", {"password": self.password})
        self._logged_in = True

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        resp = self.session.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code < 200 or resp.status_code >= 300:
            error = body.get("error") if isinstance(body, dict) else None
            logging.warning("Stock API %s failed: HTTP %s %s", path, resp.status_code, error or "")
            raise RuntimeError(error or f"Request to {path} failed with HTTP {resp.status_code}")
        return body

    def load_snapshot(self, order_id: str) -> OrderDemandSnapshot:
        self._login()
        body = self._post("/api/stock/scan-session/start", {"orderId": order_id})
        snapshot = body.get("snapshot")
        if not snapshot:
            raise LookupError(f"Order not found: {order_id}")
        return OrderDemandSnapshot.from_dict(snapshot)

    def submit(self, submission: StockSubmission) -> Dict[str, Any]:
        self._login()
        logging.info("Sending batch request to save %s scanned items", len(submission.events))
        self._post("/api/stock/scan-session/batch", submission.batch_payload())
        logging.info("Sending submit request for invoice %s", submission.invoice_number)
        return self._post("/api/stock/scan-session/submit", submission.submit_payload())


def build_sink(config, user_id: str = "warehouse"):
    """Pick the HTTP sink when api.base_url is configured, else the local DB."""
    base_url = (config.get("api.base_url", "") or "").strip()
    if base_url:
        return HttpSubmissionSink(
            base_url,
            user_id=user_id,
            password=(config.get("api.password", "") or "").strip() or None,
            timeout_seconds=config.get("api.timeout_seconds", 15),
        )

    from image_store import ImageStoreConfig, StockImageStore

    store = StockImageStore(ImageStoreConfig(
        upload_dir=config.get("storage.upload_dir", "uploads/stock"),
        remote_url=(config.get("storage.remote_url", "") or "").strip() or None,
        remote_token=(config.get("storage.remote_token", "") or "").strip() or None,
    ))
    return DatabaseSubmissionSink(user_id=user_id, image_store=store)
