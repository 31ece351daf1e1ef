"""
Quick sanity run: a short mixed burst against a local object store.
Run: uv run examples/write_burst.py
"""
import asyncio
import os

from downpour import LoadDriver, WorkloadSpec, render_report, render_timeline

async def main():
    spec = WorkloadSpec.from_mix(
        10,
        {"read": 80, "write": 15, "list": 5},
        base_url=os.getenv("DOWNPOUR_BASE_URL", "http://localhost:8000"),
        iterations_per_worker=20,
        payload_sizes=(4 * 1024, 256 * 1024),
        global_budget_s=30.0,
        request_timeout_s=float(os.getenv("HTTP_REQUEST_TIMEOUT_S", "5")),
        rate_limit_per_s=50.0,
        rate_ramp_up_s=5.0,
    )

    report = await LoadDriver(spec, use_progress_bar=True).run()
    print()
    print(render_report(report))
    print()
    print(render_timeline(report.timeline, width=100))

if __name__ == "__main__":
    asyncio.run(main())
