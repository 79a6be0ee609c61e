"""Basic telemetry example using the built-in DI container."""

import logging
import random

from telemetry_engine.core.config import EngineConfig
from telemetry_engine.core.container import DIContainer


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    engine = DIContainer.create_engine(EngineConfig(), db_path="demo.db", reports_dir="demo-reports")

    engine.rules.create(
        {
            "name": "Checkout error rate",
            "source_filter": "checkout",
            "metric_name": "error_rate",
            "condition": ">",
            "threshold": 0.05,
            "severity": "critical",
        }
    )

    for _ in range(200):
        engine.submit_sample("checkout", "request", 1.0)
        engine.submit_sample("checkout", "response_time", random.uniform(20, 400))
        if random.random() < 0.1:
            engine.submit_sample("checkout", "error", 1.0, is_error=True)

    print("Rollup:", engine.run_rollup())
    print("Notifications sent:", engine.dispatch_pending())
    print("Latency p95 by day:", engine.query.query_metrics(metric_name="response_time", aggregation="max"))
    print("Health:", engine.health().status)


if __name__ == "__main__":
    main()
