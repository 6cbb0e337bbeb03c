"""
Redis job queue (redis.asyncio).

Per queue, under `{prefix}:{queue}:`:
  jobs      hash  id -> immutable job JSON (id, type, payload, max_attempts, created_at)
  attempts  hash  id -> attempts started
  status    hash  id -> waiting | active | delayed | completed | dead
  errors    hash  id -> last error
  results   hash  id -> result JSON
  waiting   list  LPUSH in, RPOP out (FIFO)
  delayed   zset  score = time the job becomes due
  active    zset  score = lease deadline
  dead      list  dead-lettered ids

State changes that touch more than one key run as Lua scripts so they are atomic.
"""
import json
import logging
import time

import redis.asyncio as redis

from orderflow.queue import Job, JobQueue

logger = logging.getLogger(__name__)

# KEYS: jobs, status, attempts, waiting, delayed  ARGV: id, body, due_at (0 = now)
ENQUEUE_LUA = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
  return 0
end
redis.call('HSET', KEYS[3], ARGV[1], 0)
if tonumber(ARGV[3]) > 0 then
  redis.call('HSET', KEYS[2], ARGV[1], 'delayed')
  redis.call('ZADD', KEYS[5], ARGV[3], ARGV[1])
else
  redis.call('HSET', KEYS[2], ARGV[1], 'waiting')
  redis.call('LPUSH', KEYS[4], ARGV[1])
end
return 1
"""

# KEYS: waiting, active, attempts, status, jobs, dead, errors  ARGV: lease deadline
LEASE_LUA = """
while true do
  local id = redis.call('RPOP', KEYS[1])
  if not id then
    return nil
  end
  local body = redis.call('HGET', KEYS[5], id)
  if body then
    local attempts = redis.call('HINCRBY', KEYS[3], id, 1)
    local max_attempts = tonumber(cjson.decode(body)['max_attempts'])
    if attempts > max_attempts then
      redis.call('HSET', KEYS[4], id, 'dead')
      if redis.call('HEXISTS', KEYS[7], id) == 0 then
        redis.call('HSET', KEYS[7], id, 'exceeded max attempts')
      end
      redis.call('LPUSH', KEYS[6], id)
    else
      redis.call('HSET', KEYS[4], id, 'active')
      redis.call('ZADD', KEYS[2], ARGV[1], id)
      return {id, body, attempts}
    end
  end
end
"""

# KEYS: source zset, waiting, status, errors  ARGV: now, error to record (may be empty)
MOVE_DUE_LUA = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 100)
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('HSET', KEYS[3], id, 'waiting')
  if ARGV[2] ~= '' then
    redis.call('HSET', KEYS[4], id, ARGV[2])
  end
  redis.call('LPUSH', KEYS[2], id)
end
return #ids
"""

# KEYS: dead, waiting, status, attempts, errors  ARGV: limit
REPLAY_LUA = """
local n = 0
while n < tonumber(ARGV[1]) do
  local id = redis.call('RPOP', KEYS[1])
  if not id then
    break
  end
  redis.call('HSET', KEYS[4], id, 0)
  redis.call('HDEL', KEYS[5], id)
  redis.call('HSET', KEYS[3], id, 'waiting')
  redis.call('LPUSH', KEYS[2], id)
  n = n + 1
end
return n
"""


class RedisJobQueue(JobQueue):
    def __init__(self, client: redis.Redis, policies=None, prefix: str = "orderflow", visibility_timeout: float = 300):
        super().__init__(policies, visibility_timeout)
        self.r = client
        self.prefix = prefix
        self._enqueue = client.register_script(ENQUEUE_LUA)
        self._lease = client.register_script(LEASE_LUA)
        self._move_due = client.register_script(MOVE_DUE_LUA)
        self._replay = client.register_script(REPLAY_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisJobQueue":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def key(self, queue: str, name: str) -> str:
        return f"{self.prefix}:{queue}:{name}"

    async def enqueue(self, queue, job_type, payload, job_id, delay=0):
        job = Job(
            id=job_id,
            queue=queue,
            type=job_type,
            payload=payload,
            max_attempts=self.policy(queue).max_attempts,
            status="delayed" if delay > 0 else "waiting",
        )
        body = job.model_dump_json(include={"id", "queue", "type", "payload", "max_attempts", "created_at"})
        added = await self._enqueue(
            keys=[
                self.key(queue, "jobs"),
                self.key(queue, "status"),
                self.key(queue, "attempts"),
                self.key(queue, "waiting"),
                self.key(queue, "delayed"),
            ],
            args=[job_id, body, time.time() + delay if delay > 0 else 0],
        )
        return job if added else None

    async def lease(self, queue):
        leased = await self._lease(
            keys=[
                self.key(queue, "waiting"),
                self.key(queue, "active"),
                self.key(queue, "attempts"),
                self.key(queue, "status"),
                self.key(queue, "jobs"),
                self.key(queue, "dead"),
                self.key(queue, "errors"),
            ],
            args=[time.time() + self.visibility_timeout],
        )
        if not leased:
            return None
        _job_id, body, attempts = leased
        job = Job.model_validate_json(body)
        job.attempts = int(attempts)
        job.status = "active"
        job.last_error = await self.r.hget(self.key(queue, "errors"), job.id)
        return job

    async def complete(self, job, result=None):
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.zrem(self.key(job.queue, "active"), job.id)
            pipe.hset(self.key(job.queue, "status"), job.id, "completed")
            pipe.hset(self.key(job.queue, "results"), job.id, json.dumps(result or {}))
            await pipe.execute()

    async def fail(self, job, error, retryable=True):
        dead = not retryable or job.attempts >= job.max_attempts
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.zrem(self.key(job.queue, "active"), job.id)
            pipe.hset(self.key(job.queue, "errors"), job.id, error)
            if dead:
                pipe.hset(self.key(job.queue, "status"), job.id, "dead")
                pipe.lpush(self.key(job.queue, "dead"), job.id)
            else:
                delay = self.policy(job.queue).backoff(job.attempts)
                if delay > 0:
                    pipe.hset(self.key(job.queue, "status"), job.id, "delayed")
                    pipe.zadd(self.key(job.queue, "delayed"), {job.id: time.time() + delay})
                else:
                    pipe.hset(self.key(job.queue, "status"), job.id, "waiting")
                    pipe.lpush(self.key(job.queue, "waiting"), job.id)
            await pipe.execute()
        return "dead" if dead else "retry"

    async def _move_due_to_waiting(self, queue: str, source: str, error: str) -> int:
        return await self._move_due(
            keys=[
                self.key(queue, source),
                self.key(queue, "waiting"),
                self.key(queue, "status"),
                self.key(queue, "errors"),
            ],
            args=[time.time(), error],
        )

    async def promote_due(self, queue):
        return await self._move_due_to_waiting(queue, "delayed", "")

    async def reclaim_expired(self, queue):
        reclaimed = await self._move_due_to_waiting(queue, "active", "lease expired")
        if reclaimed:
            logger.warning("Reclaimed %d expired lease(s) on %s", reclaimed, queue)
        return reclaimed

    async def get_job(self, queue, job_id):
        body = await self.r.hget(self.key(queue, "jobs"), job_id)
        if body is None:
            return None
        job = Job.model_validate_json(body)
        async with self.r.pipeline(transaction=False) as pipe:
            pipe.hget(self.key(queue, "attempts"), job_id)
            pipe.hget(self.key(queue, "status"), job_id)
            pipe.hget(self.key(queue, "errors"), job_id)
            pipe.hget(self.key(queue, "results"), job_id)
            attempts, status, error, result = await pipe.execute()
        job.attempts = int(attempts or 0)
        job.status = status or "waiting"
        job.last_error = error
        job.result = json.loads(result) if result else None
        return job

    async def stats(self, queue):
        async with self.r.pipeline(transaction=False) as pipe:
            pipe.llen(self.key(queue, "waiting"))
            pipe.zcard(self.key(queue, "active"))
            pipe.zcard(self.key(queue, "delayed"))
            pipe.llen(self.key(queue, "dead"))
            waiting, active, delayed, dead = await pipe.execute()
        return {"waiting": waiting, "active": active, "delayed": delayed, "dead": dead}

    async def dead_letters(self, queue, limit=100):
        ids = await self.r.lrange(self.key(queue, "dead"), -limit, -1)
        jobs = []
        for job_id in reversed(ids):
            job = await self.get_job(queue, job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def replay_dead_letters(self, queue, limit=100):
        return await self._replay(
            keys=[
                self.key(queue, "dead"),
                self.key(queue, "waiting"),
                self.key(queue, "status"),
                self.key(queue, "attempts"),
                self.key(queue, "errors"),
            ],
            args=[limit],
        )

    async def close(self) -> None:
        await self.r.aclose()
