"""Synthetic pipeline traffic for demos and local dashboards."""

from datetime import datetime, timedelta, timezone
from random import Random
from typing import Dict, List, Optional

DEMO_CUSTOMERS = {
    "cust1": ("mobile", "web"),
    "cust2": ("kiosk",),
}


def build_demo_payloads(count: int = 250, seed: int = 42, now: Optional[datetime] = None) -> List[Dict]:
    """Generate ingestion payloads shaped like the pipeline backend's reports.

    ``cust2`` never uses TTS, so its TTS latency arrives as the ``"none"``
    sentinel the backend sends for skipped stages.
    """
    rng = Random(seed)
    now = now or datetime.now(timezone.utc)
    customers = [(name, app) for name, apps in DEMO_CUSTOMERS.items() for app in apps]

    payloads = []
    for idx in range(count):
        customer_name, customer_app = customers[idx % len(customers)]
        created_at = now - timedelta(minutes=idx * 3)
        lang_detection = max(5, int(rng.gauss(40, 8)))
        nmt = max(20, int(rng.gauss(220, 40)))
        llm = max(50, int(rng.gauss(900 if idx < 40 else 650, 120)))
        back_nmt = max(20, int(rng.gauss(200, 35)))
        tts = None if customer_name == "cust2" else max(30, int(rng.gauss(350, 60)))
        overall = lang_detection + nmt + llm + back_nmt + (tts or 0) + rng.randint(5, 30)
        text_chars = max(10, int(rng.gauss(140, 40)))

        payloads.append(
            {
                "requestId": f"demo-{idx:05d}",
                "customerName": customer_name,
                "customerApp": customer_app,
                "timestamp": created_at.isoformat(),
                "langdetectionLatency": f"{lang_detection}ms",
                "nmtLatency": f"{nmt}ms",
                "llmLatency": llm,
                "backNmtLatency": back_nmt,
                "ttsLatency": "none" if tts is None else f"{tts}ms",
                "overallPipelineLatency": overall,
                "nmtUsage": text_chars,
                "llmUsage": max(20, int(rng.gauss(600, 150))),
                "backNmtUsage": max(10, int(text_chars * rng.uniform(0.9, 1.2))),
                "ttsUsage": None if tts is None else max(10, int(rng.gauss(180, 50))),
            }
        )
    # Oldest first, the order a producer would have reported them.
    payloads.reverse()
    return payloads
