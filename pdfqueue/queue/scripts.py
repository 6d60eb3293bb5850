"""
Lua scripts implementing every job state transition atomically on the broker.

Key layout under a queue prefix P = "{key_prefix}:{queue_name}":

    P:meta            hash   queue bookkeeping (created_at, paused)
    P:ids             string auto-increment job id counter
    P:seq             string FIFO sequence counter
    P:names           set    job names ever enqueued
    P:wait:{name}     zset   waiting jobs, score = seq - priority * scale
    P:delayed:{name}  zset   delayed jobs, score = eligible time (ms)
    P:active          zset   leased jobs, score = lease expiry (ms)
    P:completed       zset   completed jobs, score = finish time (ms)
    P:failed          zset   failed jobs, score = finish time (ms)
    P:job:{id}        hash   job fields

Scripts receive P as ARGV[1] and derive keys from it, so a queue must live
on a single Redis node.
"""

from pdfqueue.constants import PRIORITY_SCALE

_HELPERS = """
local function job_key(prefix, job_id)
  return prefix .. ':job:' .. job_id
end

local function push_waiting(prefix, job_id, name)
  local key = job_key(prefix, job_id)
  local priority = tonumber(redis.call('HGET', key, 'priority') or '0')
  local seq = redis.call('INCR', prefix .. ':seq')
  redis.call('ZADD', prefix .. ':wait:' .. name, seq - priority * %(scale)d, job_id)
  redis.call('HSET', key, 'state', 'waiting')
  redis.call('HDEL', key, 'delay_until')
end

local function finish(prefix, set_name, job_id, now, keep)
  local set_key = prefix .. ':' .. set_name
  if keep == 0 then
    redis.call('DEL', job_key(prefix, job_id))
    return
  end
  redis.call('ZADD', set_key, now, job_id)
  if keep > 0 then
    local excess = redis.call('ZCARD', set_key) - keep
    if excess > 0 then
      local oldest = redis.call('ZRANGE', set_key, 0, excess - 1)
      for _, old_id in ipairs(oldest) do
        redis.call('DEL', job_key(prefix, old_id))
      end
      redis.call('ZREMRANGEBYRANK', set_key, 0, excess - 1)
    end
  end
end

local function owns_lock(prefix, job_id, token)
  return redis.call('HGET', job_key(prefix, job_id), 'lock_token') == token
    and redis.call('ZSCORE', prefix .. ':active', job_id)
end
""" % {"scale": PRIORITY_SCALE}

# ARGV: prefix, job_id ('' = auto), name, data, opts, now, delay_until,
#       priority, remove_on_complete, remove_on_fail
# Returns {job_id, created}
ADD_JOB = _HELPERS + """
local prefix = ARGV[1]
local job_id = ARGV[2]
local name = ARGV[3]
local now = ARGV[6]

if job_id == '' then
  -- skip counter values already taken by caller-supplied ids
  repeat
    job_id = tostring(redis.call('INCR', prefix .. ':ids'))
  until redis.call('EXISTS', job_key(prefix, job_id)) == 0
else
  local state = redis.call('HGET', job_key(prefix, job_id), 'state')
  if state and state ~= 'completed' and state ~= 'failed' then
    return {job_id, 0}
  end
  if state then
    redis.call('ZREM', prefix .. ':completed', job_id)
    redis.call('ZREM', prefix .. ':failed', job_id)
    redis.call('DEL', job_key(prefix, job_id))
  end
end

local key = job_key(prefix, job_id)
redis.call('HSET', key,
  'id', job_id,
  'name', name,
  'data', ARGV[4],
  'opts', ARGV[5],
  'priority', ARGV[8],
  'remove_on_complete', ARGV[9],
  'remove_on_fail', ARGV[10],
  'attempts', '0',
  'stalled_count', '0',
  'progress', '0',
  'created_at', now)
redis.call('SADD', prefix .. ':names', name)

if tonumber(ARGV[7]) > tonumber(now) then
  redis.call('HSET', key, 'state', 'delayed', 'delay_until', ARGV[7])
  redis.call('ZADD', prefix .. ':delayed:' .. name, ARGV[7], job_id)
else
  push_waiting(prefix, job_id, name)
end
return {job_id, 1}
"""

# ARGV: prefix, name, token, now, lock_expires_at
# Returns the job hash as a flat list, or false
CLAIM_JOB = _HELPERS + """
local prefix = ARGV[1]
local name = ARGV[2]

if redis.call('HEXISTS', prefix .. ':meta', 'paused') == 1 then
  return false
end

local delayed_key = prefix .. ':delayed:' .. name
local due = redis.call('ZRANGEBYSCORE', delayed_key, '-inf', ARGV[4], 'LIMIT', 0, 1000)
for _, due_id in ipairs(due) do
  redis.call('ZREM', delayed_key, due_id)
  push_waiting(prefix, due_id, name)
end

local popped = redis.call('ZPOPMIN', prefix .. ':wait:' .. name)
if #popped == 0 then
  return false
end

local job_id = popped[1]
local key = job_key(prefix, job_id)
if redis.call('EXISTS', key) == 0 then
  return false
end

redis.call('ZADD', prefix .. ':active', ARGV[5], job_id)
redis.call('HSET', key, 'state', 'active', 'lock_token', ARGV[3], 'processed_at', ARGV[4])
return redis.call('HGETALL', key)
"""

# ARGV: prefix, job_id, token, lock_expires_at
EXTEND_LOCK = _HELPERS + """
local prefix = ARGV[1]
if owns_lock(prefix, ARGV[2], ARGV[3]) then
  redis.call('ZADD', prefix .. ':active', 'XX', ARGV[4], ARGV[2])
  return 1
end
return 0
"""

# ARGV: prefix, job_id, token, progress
UPDATE_PROGRESS = _HELPERS + """
local prefix = ARGV[1]
if owns_lock(prefix, ARGV[2], ARGV[3]) then
  redis.call('HSET', job_key(prefix, ARGV[2]), 'progress', ARGV[4])
  return 1
end
return 0
"""

# ARGV: prefix, job_id, token, now, result
# Returns 1, or -1 when the lock is not held
COMPLETE_JOB = _HELPERS + """
local prefix = ARGV[1]
local job_id = ARGV[2]
if not owns_lock(prefix, job_id, ARGV[3]) then
  return -1
end

local key = job_key(prefix, job_id)
redis.call('ZREM', prefix .. ':active', job_id)
redis.call('HINCRBY', key, 'attempts', 1)
redis.call('HSET', key, 'state', 'completed', 'result', ARGV[5], 'finished_at', ARGV[4])
redis.call('HDEL', key, 'lock_token', 'error', 'failure_kind')
finish(prefix, 'completed', job_id, ARGV[4], tonumber(redis.call('HGET', key, 'remove_on_complete') or '-1'))
return 1
"""

# ARGV: prefix, job_id, token, now, error, mode ('retry' | 'fail'), retry_at
# Returns 1 (retry scheduled), 0 (failed), or -1 when the lock is not held
FAIL_JOB = _HELPERS + """
local prefix = ARGV[1]
local job_id = ARGV[2]
if not owns_lock(prefix, job_id, ARGV[3]) then
  return -1
end

local key = job_key(prefix, job_id)
redis.call('ZREM', prefix .. ':active', job_id)
redis.call('HINCRBY', key, 'attempts', 1)
redis.call('HSET', key, 'error', ARGV[5], 'failure_kind', 'handler')
redis.call('HDEL', key, 'lock_token')

if ARGV[6] == 'retry' then
  local name = redis.call('HGET', key, 'name')
  if tonumber(ARGV[7]) > tonumber(ARGV[4]) then
    redis.call('HSET', key, 'state', 'delayed', 'delay_until', ARGV[7])
    redis.call('ZADD', prefix .. ':delayed:' .. name, ARGV[7], job_id)
  else
    push_waiting(prefix, job_id, name)
  end
  return 1
end

redis.call('HSET', key, 'state', 'failed', 'finished_at', ARGV[4])
finish(prefix, 'failed', job_id, ARGV[4], tonumber(redis.call('HGET', key, 'remove_on_fail') or '-1'))
return 0
"""

# ARGV: prefix, now, max_stalled_count, reason
# Returns a flat list {job_id, outcome, ...} with outcome 'waiting' or 'failed'
RECOVER_STALLED = _HELPERS + """
local prefix = ARGV[1]
local now = ARGV[2]
local max_stalled = tonumber(ARGV[3])
local outcome = {}

local expired = redis.call('ZRANGEBYSCORE', prefix .. ':active', '-inf', now, 'LIMIT', 0, 1000)
for _, job_id in ipairs(expired) do
  redis.call('ZREM', prefix .. ':active', job_id)
  local key = job_key(prefix, job_id)
  if redis.call('EXISTS', key) == 1 then
    redis.call('HDEL', key, 'lock_token')
    local stalled = tonumber(redis.call('HGET', key, 'stalled_count') or '0')
    if stalled < max_stalled then
      redis.call('HINCRBY', key, 'stalled_count', 1)
      push_waiting(prefix, job_id, redis.call('HGET', key, 'name'))
      table.insert(outcome, job_id)
      table.insert(outcome, 'waiting')
    else
      redis.call('HSET', key, 'state', 'failed', 'error', ARGV[4], 'failure_kind', 'stalled', 'finished_at', now)
      finish(prefix, 'failed', job_id, now, tonumber(redis.call('HGET', key, 'remove_on_fail') or '-1'))
      table.insert(outcome, job_id)
      table.insert(outcome, 'failed')
    end
  end
end
return outcome
"""

# ARGV: prefix, job_id, reset_attempts ('1' | '0')
RETRY_FAILED = _HELPERS + """
local prefix = ARGV[1]
local job_id = ARGV[2]
local key = job_key(prefix, job_id)
if redis.call('HGET', key, 'state') ~= 'failed' then
  return 0
end

redis.call('ZREM', prefix .. ':failed', job_id)
if ARGV[3] == '1' then
  redis.call('HSET', key, 'attempts', '0', 'stalled_count', '0')
end
redis.call('HDEL', key, 'finished_at', 'error', 'failure_kind')
push_waiting(prefix, job_id, redis.call('HGET', key, 'name'))
return 1
"""

# ARGV: prefix, job_id
# Returns 1 when removed, 0 when missing, -1 when the job is active
REMOVE_JOB = _HELPERS + """
local prefix = ARGV[1]
local job_id = ARGV[2]
local key = job_key(prefix, job_id)
local state = redis.call('HGET', key, 'state')
if not state then
  return 0
end
if state == 'active' then
  return -1
end

local name = redis.call('HGET', key, 'name')
redis.call('ZREM', prefix .. ':wait:' .. name, job_id)
redis.call('ZREM', prefix .. ':delayed:' .. name, job_id)
redis.call('ZREM', prefix .. ':completed', job_id)
redis.call('ZREM', prefix .. ':failed', job_id)
redis.call('DEL', key)
return 1
"""

# ARGV: prefix, set name ('completed' | 'failed'), cutoff, limit (0 = no limit)
# Returns the removed job ids
CLEAN_FINISHED = _HELPERS + """
local prefix = ARGV[1]
local set_key = prefix .. ':' .. ARGV[2]
local limit = tonumber(ARGV[4])
local ids
if limit > 0 then
  ids = redis.call('ZRANGEBYSCORE', set_key, '-inf', ARGV[3], 'LIMIT', 0, limit)
else
  ids = redis.call('ZRANGEBYSCORE', set_key, '-inf', ARGV[3])
end
for _, job_id in ipairs(ids) do
  redis.call('DEL', job_key(prefix, job_id))
  redis.call('ZREM', set_key, job_id)
end
return ids
"""

# ARGV: prefix, job_id, token
# Returns 1 when the job went back to waiting, -1 when the lock is not held
RELEASE_JOB = _HELPERS + """
local prefix = ARGV[1]
local job_id = ARGV[2]
if not owns_lock(prefix, job_id, ARGV[3]) then
  return -1
end

local key = job_key(prefix, job_id)
redis.call('ZREM', prefix .. ':active', job_id)
redis.call('HDEL', key, 'lock_token', 'processed_at')
push_waiting(prefix, job_id, redis.call('HGET', key, 'name'))
return 1
"""
