"""
Step writers up against a local object store until failures pass 5%.
Run: uv run examples/stress_sweep.py
"""
import asyncio
import os

from downpour import WorkloadSpec, render_stress, run_stress_test

async def main():
    base = WorkloadSpec(
        base_url=os.getenv("DOWNPOUR_BASE_URL", "http://localhost:8000"),
        writers=1,
        iterations_per_worker=1000,
        payload_sizes=(64 * 1024,),
        request_timeout_s=5.0,
    )
    steps = await run_stress_test(
        base,
        start_workers=5,
        max_workers=100,
        step_size=5,
        step_budget_s=10.0,
        failure_threshold=0.05,
    )
    print(render_stress(steps))

if __name__ == "__main__":
    asyncio.run(main())
