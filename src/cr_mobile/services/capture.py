"""
Captura de fallos no manejados.

Instala un excepthook global (y el de threading) lo antes posible para que
cualquier excepción no capturada quede persistida en el store antes de que
el proceso termine.
"""

from __future__ import annotations

import locale
import platform
import sys
import threading
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from cr_mobile.sync.pipeline import ReportPipeline


def collect_diagnostics() -> Dict[str, Any]:
    return {
        "os": {
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "python": {
            "version": platform.python_version(),
            "implementation": platform.python_implementation(),
        },
        "locale": locale.getlocale()[0],
    }


def build_crash_payload(exc_type, exc_value, exc_tb, thread_name: Optional[str] = None) -> Dict[str, Any]:
    """Payload serializable de un fallo: tipo, mensaje, traceback y diagnóstico."""
    return {
        "exception": {
            "type": getattr(exc_type, "__qualname__", str(exc_type)),
            "module": getattr(exc_type, "__module__", None),
            "message": str(exc_value),
        },
        "stacktrace": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        "thread": thread_name or threading.current_thread().name,
        "capturedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "device": collect_diagnostics(),
    }


class CrashHandler:
    """Excepthooks que persisten el fallo y delegan en los hooks previos"""

    def __init__(self, pipeline: "ReportPipeline"):
        self.pipeline = pipeline
        self._previous_excepthook = None
        self._previous_threading_hook = None
        self.installed = False

    def install(self) -> "CrashHandler":
        if self.installed:
            return self
        self._previous_excepthook = sys.excepthook
        self._previous_threading_hook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._threading_excepthook
        self.installed = True
        return self

    def uninstall(self) -> None:
        if not self.installed:
            return
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_threading_hook
        self.installed = False

    def _persist(self, exc_type, exc_value, exc_tb, thread_name: Optional[str] = None) -> None:
        try:
            payload = build_crash_payload(exc_type, exc_value, exc_tb, thread_name)
            self.pipeline.capture(payload)
        except Exception as e:
            # El hook nunca debe lanzar; stderr es lo único fiable aquí
            print(f"[CR_CRASH] No se pudo persistir el fallo: {e}", file=sys.stderr, flush=True)

    def _excepthook(self, exc_type, exc_value, exc_tb) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            self._persist(exc_type, exc_value, exc_tb)
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc_value, exc_tb)

    def _threading_excepthook(self, args) -> None:
        if args.exc_type is not SystemExit:
            thread_name = args.thread.name if args.thread is not None else None
            self._persist(args.exc_type, args.exc_value, args.exc_traceback, thread_name)
        if self._previous_threading_hook is not None:
            self._previous_threading_hook(args)


def install_excepthook(pipeline: "ReportPipeline") -> CrashHandler:
    """Instala los hooks globales de captura para `pipeline`."""
    return CrashHandler(pipeline).install()
