from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from downpour.api.jobs import RunManager, RunState
from downpour.config import WorkloadSpec

run_manager = RunManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    run_manager.start()
    yield
    await run_manager.shutdown()


app = FastAPI(
    title="Downpour API",
    description="Launch and inspect load runs against an HTTP object-storage target",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.post("/api/runs", response_model=dict)
async def create_run(spec: WorkloadSpec):
    run_id = run_manager.create_run(spec)
    return {"run_id": run_id}

@app.get("/api/runs", response_model=List[RunState])
async def list_runs():
    return run_manager.list_runs()

@app.get("/api/runs/{run_id}", response_model=RunState)
async def get_run(run_id: str):
    run = run_manager.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run

@app.post("/api/runs/{run_id}/stop")
async def stop_run(run_id: str):
    if not run_manager.get_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    stopped = run_manager.stop_run(run_id)
    return {"status": "stopping" if stopped else "not running"}

@app.delete("/api/runs/{run_id}")
async def delete_run(run_id: str):
    if not run_manager.get_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    run_manager.delete_run(run_id)
    return {"status": "deleted"}


def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

if __name__ == "__main__":
    main()
