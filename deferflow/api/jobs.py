from fastapi import APIRouter, Depends, HTTPException, Request

from ..auth import require_api_key
from ..exceptions import InvalidJobArguments, QueueError
from ..schemas import BulkJobCreate, BulkJobResponse, JobCreate, JobListResponse, JobResponse, TriggerResponse

router = APIRouter()


def _queue_error(exc: QueueError) -> HTTPException:
    return HTTPException(status_code=503, detail=str(exc))


@router.post("/jobs", response_model=JobResponse)
async def create_job(job: JobCreate, request: Request, authorized: bool = Depends(require_api_key)):
    state = request.app.state
    try:
        record = await state.queue.submit_record(job.kind, job.args, delay=job.delay, at=job.at)
    except QueueError as exc:
        raise _queue_error(exc)
    except (InvalidJobArguments, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return JobResponse.from_record(record)


@router.post("/jobs/bulk", response_model=BulkJobResponse)
async def create_jobs_bulk(body: BulkJobCreate, request: Request, authorized: bool = Depends(require_api_key)):
    try:
        job_ids = await request.app.state.queue.submit_bulk(body.kind, body.args_list, at=body.at)
    except QueueError as exc:
        raise _queue_error(exc)
    except (InvalidJobArguments, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return BulkJobResponse(job_ids=job_ids)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(request: Request):
    records = await request.app.state.store.list()
    return JobListResponse(jobs=[JobResponse.from_record(r) for r in records])


@router.get("/jobs/dead", response_model=JobListResponse)
async def list_dead_jobs(request: Request):
    records = await request.app.state.store.list_dead()
    return JobListResponse(jobs=[JobResponse.from_record(r) for r in records])


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, request: Request):
    record = await request.app.state.store.get(job_id)
    if not record:
        raise HTTPException(status_code=404, detail="job not found")
    return JobResponse.from_record(record)


@router.post("/jobs/dead/{job_id}/retry", response_model=JobResponse)
async def retry_dead_job(job_id: str, request: Request, authorized: bool = Depends(require_api_key)):
    record = await request.app.state.store.resurrect(job_id)
    if not record:
        raise HTTPException(status_code=404, detail="dead job not found")
    return JobResponse.from_record(record)


@router.post("/triggers/{kind}", response_model=TriggerResponse)
async def trigger(kind: str, request: Request, authorized: bool = Depends(require_api_key)):
    state = request.app.state
    if kind not in state.registry:
        raise HTTPException(status_code=404, detail=f"unknown job kind {kind!r}")
    try:
        job_id = await state.queue.submit(kind)
    except QueueError as exc:
        raise _queue_error(exc)
    return TriggerResponse(kind=kind, job_id=job_id)
