#!/usr/bin/env python3
"""
Warehouse stock-out QR scanner.

Owns the scan session for one stock-out: a camera decodes wallpaper labels,
each decode is gated, parsed and validated against the selected order, and
accepted items are appended to the session log that later becomes the stock
movement.
"""

import copy
import json
import time
import logging
import logging.handlers
import threading
import os
import uuid
from datetime import datetime
from enum import Enum
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from path_utils import ensure_directory, get_base_dir, resolve_path, timestamped_name
from scan_validation import (
    OrderDemandSnapshot,
    ScanEvent,
    ScanFormatError,
    ScanPayload,
    ValidationReason,
    ValidationResult,
    parse_scan_payload,
    validate,
)
from scan_aggregation import AggregatedLine, aggregate, summarize

# Camera dependencies are loaded on first use so the API server and tests
# never import OpenCV/pyzbar.
cv2 = None
pyzbar = None
CAMERA_DEPS_AVAILABLE = False

try:
    import RPi.GPIO as GPIO
    GPIO_AVAILABLE = True
except (ImportError, RuntimeError):
    GPIO = None
    GPIO_AVAILABLE = False

BASE_DIR = get_base_dir()
LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / 'stock_scanner.log'


def _build_log_handlers():
    try:
        max_mb = int((os.environ.get('WALLPAPER_LOG_MAX_MB') or '20').strip())
    except ValueError:
        max_mb = 20
    if max_mb <= 0:
        max_mb = 20

    try:
        backups = int((os.environ.get('WALLPAPER_LOG_BACKUPS') or '3').strip())
    except ValueError:
        backups = 3
    if backups < 0:
        backups = 0

    rotating = logging.handlers.RotatingFileHandler(
        LOG_FILE,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
    )
    stream = logging.StreamHandler()
    return [rotating, stream]


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=_build_log_handlers(),
)


class StockScannerConfig:
    """Configuration management for the stock-out scanner"""

    def __init__(self, config_file='config.json'):
        self.config_file = resolve_path(config_file)
        self.default_config = {
            "station_id": "Warehouse_1",
            "scanning": {
                "log_dir": "logs/sessions",
            },
            "camera": {
                "device_id": 0,
                "resolution": [640, 480],
                "fps": 30,
                "poll_interval": 0.05,
                # Same label string seen again within this window is not re-delivered
                "repeat_suppress_seconds": 2.0,
                "show_preview": False,
            },
            "gpio": {
                "led_pin": 18,
                "buzzer_pin": 16,
            },
            "api": {
                "base_url": "",
                "password": "",
                "timeout_seconds": 15,
            },
            "storage": {
                "upload_dir": "uploads/stock",
                "remote_url": "",
                "remote_token": "",
            },
        }
        self.load_config()

    def load_config(self):
        """Load configuration from file or create default"""
        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                self.config = json.load(f)
        else:
            self.config = copy.deepcopy(self.default_config)
            self.save_config()

    def save_config(self):
        """Save current configuration to file"""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w') as f:
            json.dump(self.config, f, indent=2)

    def get(self, key_path, default=None):
        """Get nested configuration value"""
        keys = key_path.split('.')
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


def _camera_deps_required():
    global cv2, pyzbar, CAMERA_DEPS_AVAILABLE
    if not CAMERA_DEPS_AVAILABLE:
        try:
            import cv2 as _cv2  # type: ignore
            from pyzbar import pyzbar as _pyzbar  # type: ignore
            cv2 = _cv2
            pyzbar = _pyzbar
            CAMERA_DEPS_AVAILABLE = True
        except ImportError as e:
            raise RuntimeError(
                "Camera scanning requires OpenCV (cv2) and pyzbar. "
                f"Install the 'camera' extra. (import error: {e})"
            )


class RepeatSuppressor:
    """Drop a label string the camera already delivered within timeout seconds.

    A label held in front of the lens decodes on every frame; this keeps the
    camera from re-firing the same string while it stays in view.
    """

    def __init__(self, timeout=2.0):
        self.timeout = timeout
        self.recent = {}
        self.lock = threading.Lock()

    def seen_recently(self, text):
        with self.lock:
            now = time.time()
            expired = [k for k, ts in self.recent.items() if now - ts > self.timeout]
            for k in expired:
                del self.recent[k]

            if text in self.recent:
                return True
            self.recent[text] = now
            return False


class CameraScanSource:
    """OpenCV + pyzbar camera that calls back with each decoded QR string.

    pause() takes effect before the next callback: the loop re-checks the flag
    between every decoded code, not just between frames.
    """

    def __init__(self, config: Optional[StockScannerConfig] = None):
        self.config = config
        get = config.get if config else (lambda _k, d=None: d)
        self.device_id = get('camera.device_id', 0)
        self.resolution = get('camera.resolution', [640, 480])
        self.fps = get('camera.fps', 30)
        self.poll_interval = float(get('camera.poll_interval', 0.05))
        self.show_preview = bool(get('camera.show_preview', False))
        self.repeats = RepeatSuppressor(float(get('camera.repeat_suppress_seconds', 2.0)))
        self.camera = None
        self._paused = threading.Event()
        self._stopped = threading.Event()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def pause(self):
        self._paused.set()

    def resume(self):
        self._paused.clear()

    def stop(self):
        self._stopped.set()

    def open(self):
        _camera_deps_required()
        self.camera = cv2.VideoCapture(self.device_id)
        if not self.camera.isOpened():
            raise RuntimeError(f"Cannot open camera device {self.device_id}")

        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])
        self.camera.set(cv2.CAP_PROP_FPS, self.fps)
        logging.info("Camera initialized: %sx%s @ %sfps", self.resolution[0], self.resolution[1], self.fps)

    def decode_frame(self, frame) -> List[str]:
        """Return every QR string found in one frame."""
        _camera_deps_required()
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        codes = []
        for qr in pyzbar.decode(gray):
            try:
                codes.append(qr.data.decode('utf-8'))
            except UnicodeDecodeError:
                logging.warning("Skipping QR code with non UTF-8 payload")
        return codes

    def run(self, callback: Callable[[str, "CameraScanSource"], object]):
        """Read frames until stop() and deliver decoded strings to callback."""
        if self.camera is None:
            self.open()
        self._stopped.clear()
        try:
            while not self._stopped.is_set():
                ok, frame = self.camera.read()
                if not ok:
                    logging.error("Failed to read frame from camera")
                    break

                if not self._paused.is_set():
                    for text in self.decode_frame(frame):
                        if self._paused.is_set() or self._stopped.is_set():
                            break
                        if self.repeats.seen_recently(text):
                            continue
                        callback(text, self)

                if self.show_preview:
                    try:
                        cv2.imshow('Stock Scanner', frame)
                        key = cv2.waitKey(1) & 0xFF
                        if key in (ord('q'), 27):
                            break
                    except cv2.error:
                        self.show_preview = False
                time.sleep(self.poll_interval)
        finally:
            self.close()

    def close(self):
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        if cv2 is not None and self.show_preview:
            try:
                cv2.destroyAllWindows()
            except cv2.error:
                pass


class SessionState(Enum):
    IDLE = "idle"
    AWAITING_SCAN = "awaiting_scan"
    PROCESSING = "processing"
    CLOSED = "closed"


@dataclass(frozen=True)
class ScanOutcome:
    """What happened to one admitted camera callback."""
    accepted: bool
    raw: str
    payload: Optional[ScanPayload] = None
    result: Optional[ValidationResult] = None
    event: Optional[ScanEvent] = None
    message: str = ""

    @property
    def reason(self) -> Optional[ValidationReason]:
        return self.result.reason if self.result else None

    def to_dict(self):
        out = {"accepted": self.accepted, "message": self.message}
        if self.reason is not None:
            out["reason"] = self.reason.value
        if self.result is not None:
            out["details"] = dict(self.result.details)
        if self.event is not None:
            out["item"] = self.event.to_dict()
        return out


class FeedbackController:
    """Accept/reject feedback: GPIO LED + buzzer when present, always logged."""

    def __init__(self, config: Optional[StockScannerConfig] = None):
        get = config.get if config else (lambda _k, d=None: d)
        self.enabled = GPIO_AVAILABLE
        self.led_pin = get('gpio.led_pin', 18)
        self.buzzer_pin = get('gpio.buzzer_pin', 16)
        self.last_outcome: Optional[ScanOutcome] = None

        if not GPIO_AVAILABLE:
            logging.info("GPIO not available; scan feedback is log-only")
            return

        try:
            GPIO.setwarnings(False)
            GPIO.setmode(GPIO.BCM)
            GPIO.setup(self.led_pin, GPIO.OUT)
            GPIO.setup(self.buzzer_pin, GPIO.OUT)
            GPIO.output(self.led_pin, GPIO.LOW)
        except Exception as exc:
            logging.warning("GPIO initialization failed: %s", exc)
            self.enabled = False

    def notify(self, outcome: ScanOutcome):
        self.last_outcome = outcome
        if outcome.accepted:
            logging.info("Scan accepted: %s", outcome.message)
            self.beep_success()
        else:
            reason = outcome.reason.value if outcome.reason else "Error"
            logging.warning("Scan rejected (%s): %s", reason, outcome.message)
            self.beep_error()

    def beep_success(self):
        if not self.enabled:
            return
        GPIO.output(self.led_pin, GPIO.HIGH)
        GPIO.output(self.buzzer_pin, GPIO.HIGH)
        time.sleep(0.1)
        GPIO.output(self.buzzer_pin, GPIO.LOW)
        GPIO.output(self.led_pin, GPIO.LOW)

    def beep_error(self):
        if not self.enabled:
            return
        for _ in range(3):
            GPIO.output(self.buzzer_pin, GPIO.HIGH)
            time.sleep(0.1)
            GPIO.output(self.buzzer_pin, GPIO.LOW)
            time.sleep(0.1)

    def cleanup(self):
        if self.enabled:
            GPIO.cleanup()


class ScanSessionController:
    """Authoritative scan log for one stock-out session.

    handle_scan() is the camera callback. The gate is a non-blocking lock taken
    in the same call that receives the scan, before any other work, so an
    overlapping callback (nested from the source, or from another thread) is
    dropped instead of being validated against a log that has not caught up.
    """

    def __init__(self, feedback=None, clock: Optional[Callable[[], int]] = None):
        self.feedback = feedback
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._gate = threading.Lock()
        self._state = SessionState.IDLE
        self._session_id: Optional[str] = None
        self._snapshot: Optional[OrderDemandSnapshot] = None
        self._events: List[ScanEvent] = []
        self._activity: List[str] = []
        self._listeners: List[Callable[[List[AggregatedLine]], None]] = []

    # -- read-only views -------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def snapshot(self) -> Optional[OrderDemandSnapshot]:
        return self._snapshot

    @property
    def is_custom(self) -> bool:
        return self._snapshot is None

    @property
    def events(self) -> tuple:
        """Current log contents (a fresh tuple on every access)."""
        return tuple(self._events)

    @property
    def aggregated(self) -> List[AggregatedLine]:
        return aggregate(self._events)

    @property
    def activity(self) -> List[str]:
        return list(self._activity)

    def add_listener(self, listener: Callable[[List[AggregatedLine]], None]):
        """Call listener with the re-aggregated lines whenever the log changes."""
        self._listeners.append(listener)

    # -- lifecycle -------------------------------------------------------

    def start(self, snapshot: Optional[OrderDemandSnapshot] = None) -> str:
        """Begin a new session for an order snapshot (None for a custom order)."""
        self._snapshot = snapshot
        self._session_id = str(uuid.uuid4())
        self._events = []
        self._activity = []
        self._state = SessionState.AWAITING_SCAN
        if snapshot is None:
            self.log(f"Session started with ID: {self._session_id} (custom order)")
        else:
            self.log(
                f"Session started with ID: {self._session_id} "
                f"(order #{snapshot.order_number}, {len(snapshot.lines)} lines)"
            )
        self._log_changed()
        return self._session_id

    def clear(self):
        """Drop every scanned item; the session id is kept."""
        self.log(f"Clearing {len(self._events)} scanned items")
        self._events = []
        self._log_changed()

    def reset(self) -> str:
        """Drop every scanned item and move to a newly generated session id."""
        self._events = []
        self._session_id = str(uuid.uuid4())
        self._activity = []
        self.log(f"New session started with ID: {self._session_id}")
        if self._state is SessionState.IDLE:
            self._state = SessionState.AWAITING_SCAN
        self._log_changed()
        return self._session_id

    def close(self):
        """Stop accepting scans. The log stays readable for later steps."""
        if self._state is not SessionState.IDLE:
            self._state = SessionState.CLOSED
            self.log(f"Scanning closed with {len(self._events)} items")

    def reopen(self):
        """Resume scanning a closed session (workflow stepped back)."""
        if self._state is SessionState.CLOSED:
            self._state = SessionState.AWAITING_SCAN
            self.log("Scanning resumed")

    # -- scanning --------------------------------------------------------

    def handle_scan(self, raw: str, source=None) -> Optional[ScanOutcome]:
        """Process one camera decode. Returns None when the callback was dropped."""
        if not self._gate.acquire(blocking=False):
            self.log("Already processing a scan, ignoring duplicate callback")
            return None
        if self._state is not SessionState.AWAITING_SCAN:
            self._gate.release()
            self.log(f"Scan ignored while {self._state.value}")
            return None
        self._state = SessionState.PROCESSING

        try:
            if source is not None:
                source.pause()
            outcome = self._process(raw)
        except Exception as e:
            logging.error("Error processing scan: %s", e)
            self.log(f"Error processing scan: {e}")
            outcome = ScanOutcome(accepted=False, raw=raw, message=str(e) or "Failed to process scan")
        finally:
            try:
                if source is not None:
                    source.resume()
                    self.log("Scanner resumed")
            finally:
                if self._state is SessionState.PROCESSING:
                    self._state = SessionState.AWAITING_SCAN
                self._gate.release()

        if outcome.accepted:
            self._log_changed()
        self._notify(outcome)
        return outcome

    def _process(self, raw: str) -> ScanOutcome:
        session_id = self._session_id
        try:
            payload = parse_scan_payload(raw)
        except ScanFormatError as e:
            self.log("Invalid QR code format")
            result = ValidationResult.fail(ValidationReason.MALFORMED_FORMAT, str(e))
            return ScanOutcome(accepted=False, raw=raw, result=result, message=result.message)

        prior = self.events
        self.log(f"Validating {payload.unique_identifier} against {len(prior)} scanned items")
        result = validate(payload, self._snapshot, prior)
        if not result.valid:
            self.log(f"Validation result: FAIL - {result.message}")
            return ScanOutcome(accepted=False, raw=raw, payload=payload, result=result, message=result.message)

        event = ScanEvent(
            design=payload.design,
            lot=payload.lot,
            unique_identifier=payload.unique_identifier,
            scanned_at=self._clock(),
        )
        if self._session_id != session_id:
            # start()/reset() ran mid-scan; the result belongs to the old session
            message = "Session changed while processing scan"
            self.log(f"{message} - {payload.unique_identifier} not added")
            return ScanOutcome(accepted=False, raw=raw, payload=payload, result=result, message=message)
        self._events.append(event)
        message = f"Design: {event.design}, Lot: {event.lot}"
        self.log(f"Scan successful - {message}. New count: {len(self._events)}")
        return ScanOutcome(accepted=True, raw=raw, payload=payload, result=result, event=event, message=message)

    def _notify(self, outcome: ScanOutcome):
        if self.feedback is None:
            return
        try:
            self.feedback.notify(outcome)
        except Exception as e:
            logging.warning("Scan feedback failed: %s", e)

    def _log_changed(self):
        if not self._listeners:
            return
        lines = self.aggregated
        for listener in list(self._listeners):
            try:
                listener(lines)
            except Exception as e:
                logging.warning("Scan listener failed: %s", e)

    # -- session activity log ---------------------------------------------

    def log(self, message: str):
        entry = f"[{datetime.now().isoformat(timespec='milliseconds')}] {message}"
        self._activity.append(entry)
        logging.debug(entry)

    def export_log(self, directory) -> Path:
        """Write the session summary + activity lines to a text file."""
        out_dir = ensure_directory(directory)
        path = out_dir / timestamped_name(f"scan-session-{self._session_id or 'none'}", ".txt")
        totals = summarize(self.aggregated)
        lines = [
            "=== SESSION SUMMARY ===",
            f"Session ID: {self._session_id}",
            f"Total Items Scanned: {totals['items']}",
            f"Design/Lot Lines: {totals['lines']}",
            f"Timestamp: {datetime.now().isoformat()}",
            "=== DETAILED LOGS ===",
        ]
        lines.extend(self._activity)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logging.info("Session log written to %s", path)
        return path


def main():
    """Scan with the camera for one order (or a custom order) and optionally submit."""
    import argparse

    parser = argparse.ArgumentParser(description='Wallpaper stock-out QR scanner')
    parser.add_argument('--config', default='config.json', help='Configuration file path')
    parser.add_argument('--order-id', help='Order to scan against (omit for a custom order)')
    parser.add_argument('--invoice', help='Invoice number; submit the stock movement when scanning stops')
    parser.add_argument('--image', help='Proof-of-shipment photo to attach')
    parser.add_argument('--user', default='warehouse', help='User id recorded on the movement')
    args = parser.parse_args()

    from stock_workflow import StockOutWorkflow, build_sink

    config = StockScannerConfig(args.config)
    feedback = FeedbackController(config)
    source = CameraScanSource(config)
    sink = build_sink(config, user_id=args.user)
    workflow = StockOutWorkflow(ScanSessionController(feedback=feedback))

    try:
        snapshot = sink.load_snapshot(args.order_id) if args.order_id else None
        workflow.select_order(snapshot)
        logging.info("Scanning session %s; press q in the preview or Ctrl+C to stop", workflow.session_id)
        try:
            source.run(workflow.controller.handle_scan)
        except KeyboardInterrupt:
            logging.info("Scanner stopped by user")

        workflow.controller.export_log(config.get('scanning.log_dir', 'logs/sessions'))
        for line in workflow.controller.aggregated:
            logging.info("  %s / %s: %s", line.design, line.lot, line.count)

        if args.invoice:
            workflow.proceed_to_capture()
            if args.image:
                workflow.attach_image_file(args.image)
            workflow.proceed_to_submit()
            result = workflow.submit(sink, args.invoice)
            logging.info("Submitted: %s", result.get('message', result))
    except Exception as e:
        logging.error(f"Stock scanner failed: {e}")
        return 1
    finally:
        source.stop()
        feedback.cleanup()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
