#!/usr/bin/env python
"""
Script rápido para verificar el estado de la cola de reportes

Muestra:
- Reportes por estado
- Preferencia de consentimiento
- Errores recientes
"""

from cr_mobile.persistence.db import build_session_factory, build_engine, init_database
from cr_mobile.persistence.models import ErrorReport, ReporterState, ReportState
from cr_mobile.services.consent_gate import ConsentGate
from cr_mobile.services.report_store import ReportStore


def check_report_queue():
    """Verifica el estado del store local"""
    engine = init_database(build_engine())
    session_factory = build_session_factory(engine)
    store = ReportStore(session_factory)
    gate = ConsentGate(session_factory)

    print("=" * 60)
    print("  Cola de reportes de fallos")
    print("=" * 60)
    print()

    counts = store.count_by_state()
    for state in ReportState:
        print(f"   • {state.value:<17} {counts.get(state, 0)}")

    print()
    print(f"🔒 Consentimiento: {gate.get_preference().value}")

    session = session_factory()
    try:
        install = session.get(ReporterState, "install_id")
        if install and install.value:
            print(f"📱 Install ID: {install.value[:16]}...")

        failed = (
            session.query(ErrorReport)
            .filter(ErrorReport.state == ReportState.FAILED.value)
            .order_by(ErrorReport.updated_at.desc())
            .limit(3)
            .all()
        )
    finally:
        session.close()

    print()
    print("=" * 60)

    if failed:
        print()
        print("⚠️  ERRORES RECIENTES:")
        for item in failed:
            flag = " (abandonado)" if item.gave_up else ""
            print(f"   • {item.id[:8]}... intentos={item.attempts}{flag} - {item.last_error}")


if __name__ == "__main__":
    try:
        check_report_queue()
    except Exception as e:
        print(f"Error: {e}")
        import traceback
        traceback.print_exc()
