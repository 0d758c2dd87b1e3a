"""
Script de demostración del pipeline de reportes

Captura un fallo simulado y ejecuta una pasada de arranque contra el
colector configurado en CR_ENDPOINT.
"""

import asyncio

from cr_mobile.core.config import get_settings
from cr_mobile.main import build_pipeline, configure_logging
from cr_mobile.services.consent_gate import UserConfirmation
from cr_mobile.sync.delegate import ReporterDelegate


def console_prompt(count: int, summary: str) -> UserConfirmation:
    print(f"   {summary}")
    answer = input("   [s]end / [a]lways / [d]on't send: ").strip().lower()
    if answer.startswith("a"):
        return UserConfirmation.ALWAYS_SEND
    if answer.startswith("d"):
        return UserConfirmation.DONT_SEND
    return UserConfirmation.SEND


async def demo_crash_report():
    """Demostración de captura y entrega"""

    print("=" * 60)
    print("  Demo de reportes de fallos")
    print("=" * 60)
    print()

    print("1. Configurando...")
    settings = get_settings()
    configure_logging(settings)
    delegate = ReporterDelegate(
        will_send=lambda report: print(f"   → enviando {report.id[:8]}..."),
        did_succeed_sending=lambda report: print(f"   ✓ enviado {report.id[:8]}..."),
        did_fail_sending=lambda report, error: print(f"   ✗ {report.id[:8]}...: {error}"),
    )
    pipeline = build_pipeline(settings, consent_prompt=console_prompt, delegate=delegate)
    print(f"   ✓ Endpoint: {settings.COLLECTOR_ENDPOINT}")

    print("2. Capturando fallo simulado...")
    try:
        {}["missing"]
    except KeyError as e:
        report_id = pipeline.capture_exception(e)
        print(f"   ✓ Reporte {report_id} persistido")

    print("3. Procesando pendientes...")
    summary = await pipeline.on_launch()

    print()
    print("=" * 60)
    for key, value in summary.to_dict().items():
        print(f"   {key:<17} {value}")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(demo_crash_report())
