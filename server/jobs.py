"""Background job processing for SiteChat.

Crawls run as tracked jobs on an APScheduler asyncio executor. Job records
are persisted in Redis when it is configured and reachable, otherwise kept
in memory. Periodic maintenance (stale crawl reaping, idle session sweep)
runs on the same scheduler.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass, asdict

import redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400 * 7
JobHandler = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class JobRecord:
    """Job record for tracking job state."""
    id: str
    type: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parameters: Dict[str, Any] = None
    logs: List[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.parameters is None:
            self.parameters = {}
        if self.logs is None:
            self.logs = []
        self.status = JobStatus(self.status)

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        self.logs.append(f"[{datetime.now().isoformat()}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['status'] = self.status.value
        for name in ['created_at', 'started_at', 'completed_at']:
            if data[name]:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        """Create JobRecord from dictionary."""
        data = dict(data)
        for name in ['created_at', 'started_at', 'completed_at']:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data)


class JobManager:
    """Runs and tracks background jobs."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.redis_client = None
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.job_handlers: Dict[str, JobHandler] = {}
        self._running = False
        self._memory_jobs: Dict[str, JobRecord] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client else "memory"

    async def initialize(self):
        """Connect to Redis when configured and start the scheduler."""
        if self.redis_url:
            try:
                self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
                await asyncio.get_running_loop().run_in_executor(None, self.redis_client.ping)
                logger.info("Connected to Redis successfully")
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Redis not available: {e}. Job manager will run in memory-only mode.")
                self.redis_client = None

        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 60}
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.start()
        self._running = True
        logger.info(f"Job scheduler initialized ({self.backend} job store)")

        await self.recover_interrupted_jobs()

    async def shutdown(self):
        """Shutdown the job manager."""
        self._running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.redis_client:
            await asyncio.get_running_loop().run_in_executor(None, self.redis_client.close)
            self.redis_client = None
        logger.info("Job manager shutdown complete")

    def register_handler(self, job_type: str, handler: JobHandler):
        """Register a job handler coroutine ``handler(job_id, parameters)``."""
        self.job_handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    async def enqueue_job(self, job_type: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        """Record a new job and schedule it to run shortly."""
        if not self._running:
            raise RuntimeError("Job manager not initialized")
        if job_type not in self.job_handlers:
            raise ValueError(f"No handler registered for job type: {job_type}")

        job_record = JobRecord(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.QUEUED,
            created_at=datetime.now(),
            parameters=parameters or {}
        )
        job_record.add_log("Job queued")
        await self._store_job_record(job_record)

        self.scheduler.add_job(
            self._execute_job,
            'date',
            run_date=datetime.now() + timedelta(seconds=1),
            args=[job_record.id],
            id=job_record.id
        )

        logger.info(f"Enqueued job {job_record.id} of type {job_type}")
        return job_record.id

    def add_maintenance_task(self, name: str, func: Callable[[], Awaitable[Any]], seconds: int):
        """Run ``func`` every ``seconds`` seconds; not tracked as a job record."""
        if not self._running:
            raise RuntimeError("Job manager not initialized")
        self.scheduler.add_job(func, 'interval', seconds=seconds, id=f"maintenance_{name}",
                               replace_existing=True)
        logger.info(f"Scheduled maintenance task {name} every {seconds}s")

    async def get_job_status(self, job_id: str) -> Optional[JobRecord]:
        """Get job status and details."""
        if self.redis_client:
            job_data = await asyncio.get_running_loop().run_in_executor(
                None, self.redis_client.get, f"job:{job_id}"
            )
            return JobRecord.from_dict(json.loads(job_data)) if job_data else None
        return self._memory_jobs.get(job_id)

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        """List jobs, newest first, optionally filtered by status."""
        if self.redis_client:
            loop = asyncio.get_running_loop()
            job_keys = await loop.run_in_executor(
                None, lambda: list(self.redis_client.scan_iter(match="job:*"))
            )
            records = []
            for key in job_keys:
                job_data = await loop.run_in_executor(None, self.redis_client.get, key)
                if job_data:
                    records.append(JobRecord.from_dict(json.loads(job_data)))
        else:
            records = list(self._memory_jobs.values())

        jobs = [job for job in records if status is None or job.status == status]
        jobs.sort(key=lambda x: x.created_at, reverse=True)
        return jobs[:limit]

    async def recover_interrupted_jobs(self) -> List[str]:
        """Fail jobs left queued or running by a previous process."""
        recovered = []
        for job_record in await self.list_jobs(limit=10000):
            if job_record.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
                continue
            if self.scheduler and self.scheduler.get_job(job_record.id):
                continue
            job_record.status = JobStatus.FAILED
            job_record.completed_at = datetime.now()
            job_record.error = "Interrupted by service restart"
            job_record.add_log("Marked failed during start-up recovery")
            await self._store_job_record(job_record)
            recovered.append(job_record.id)

        if recovered:
            logger.warning(f"Recovered {len(recovered)} interrupted jobs")
        return recovered

    async def _execute_job(self, job_id: str):
        """Execute a single job."""
        job_record = await self.get_job_status(job_id)
        if not job_record:
            logger.error(f"Job {job_id} not found")
            return

        handler = self.job_handlers.get(job_record.type)
        if not handler:
            job_record.status = JobStatus.FAILED
            job_record.error = f"No handler registered for job type: {job_record.type}"
            job_record.add_log(f"Failed: {job_record.error}")
            await self._store_job_record(job_record)
            return

        job_record.status = JobStatus.RUNNING
        job_record.started_at = datetime.now()
        job_record.add_log("Job started")
        await self._store_job_record(job_record)

        try:
            result = await handler(job_record.id, job_record.parameters)
            job_record.completed_at = datetime.now()
            job_record.result = result

            if isinstance(result, dict) and result.get("success") is False:
                errors = result.get("errors") or []
                job_record.status = JobStatus.FAILED
                job_record.error = errors[-1] if errors else "Job reported failure"
                job_record.add_log(f"Job finished unsuccessfully: {job_record.error}")
            else:
                job_record.status = JobStatus.DONE
                job_record.add_log("Job completed successfully")

        except Exception as e:
            job_record.status = JobStatus.FAILED
            job_record.completed_at = datetime.now()
            job_record.error = str(e)
            job_record.add_log(f"Job failed: {e}")
            logger.error(f"Job {job_id} failed: {e}")

        await self._store_job_record(job_record)

    async def _store_job_record(self, job_record: JobRecord):
        """Store job record in Redis or memory."""
        if self.redis_client:
            await asyncio.get_running_loop().run_in_executor(
                None,
                self.redis_client.setex,
                f"job:{job_record.id}",
                JOB_TTL_SECONDS,
                json.dumps(job_record.to_dict())
            )
        else:
            self._memory_jobs[job_record.id] = job_record

    def _job_executed(self, event):
        logger.debug(f"Scheduled job {event.job_id} executed")

    def _job_error(self, event):
        logger.error(f"Scheduled job {event.job_id} failed: {event.exception}")
