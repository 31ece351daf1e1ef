from downpour.models import ErrorKind, Operation, OperationKind, Outcome


def make_outcome(
    kind: OperationKind = OperationKind.WRITE,
    success: bool = True,
    duration_s: float | None = 0.01,
    size: int = 1024,
    worker_id: int = 0,
    iteration: int = 0,
    status: int | None = None,
    started_at: float = 0.0,
) -> Outcome:
    op = Operation(
        kind=kind,
        bucket="b",
        key=f"k/{worker_id}/{iteration}",
        payload_size=size,
        worker_id=worker_id,
        role=f"{kind.value}-{worker_id}",
        iteration=iteration,
    )
    if success:
        return Outcome(
            operation=op,
            success=True,
            started_at=started_at,
            duration_s=duration_s,
            status=200 if status is None else status,
            bytes_sent=size if kind is OperationKind.WRITE else 0,
        )
    return Outcome(
        operation=op,
        success=False,
        started_at=started_at,
        duration_s=duration_s,
        status=500 if status is None else status,
        error_kind=ErrorKind.SERVER,
        error_detail=str(500 if status is None else status),
    )
