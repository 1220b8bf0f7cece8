"""Redis Lua script for the filling bucket.

The script reads the stored level, refills it for the time elapsed since the
last write, subtracts the drained amount and writes the result back, all in
one atomic step on the Redis server. Concurrent callers can never interleave
between the read and the write.
"""

import hashlib

# KEYS[1]: level key, KEYS[2]: last updated key
# ARGV[1]: capacity, ARGV[2]: fill rate (tokens/second),
# ARGV[3]: amount to drain (0 to inspect), ARGV[4]: TTL slack in seconds
#
# Returns {level_whole, level_micro, capacity, fill_rate, drained}.
# Redis truncates Lua numbers to integers on the way out, so the fractional
# level is smuggled across as whole tokens plus microtokens, like TIME does.
FILL_BUCKET_SCRIPT = """
-- TIME is non-deterministic; older servers need effects replication for writes after it
if redis.replicate_commands then
    redis.replicate_commands()
end

local level_key = KEYS[1]
local last_updated_key = KEYS[2]
local capacity = tonumber(ARGV[1])
local fill_rate = tonumber(ARGV[2])
local amount = tonumber(ARGV[3])
local ttl_slack = tonumber(ARGV[4]) or 0

-- The server clock is the only clock every caller agrees on
local time = redis.call('TIME')
local now = tonumber(time[1]) + (tonumber(time[2]) / 1000000)

local prior_level = tonumber(redis.call('GET', level_key))
local prior_time = tonumber(redis.call('GET', last_updated_key))

-- A missing record is a full bucket
if prior_level == nil or prior_time == nil then
    prior_level = capacity
    prior_time = now
end

local elapsed = math.max(0, now - prior_time)
local level = math.min(capacity, prior_level + (elapsed * fill_rate))
level = level - amount

-- Untouched full buckets stay keyless
if amount > 0 or level < capacity then
    local ttl = math.floor((capacity - level) / fill_rate) + ttl_slack
    if ttl < 1 then
        ttl = 1
    end
    redis.call('SET', level_key, string.format('%.6f', level), 'EX', ttl)
    redis.call('SET', last_updated_key, string.format('%.6f', now), 'EX', ttl)
end

local level_whole = math.floor(level)
local level_micro = math.floor(((level - level_whole) * 1000000) + 0.5)
if level_micro >= 1000000 then
    level_whole = level_whole + 1
    level_micro = 0
end

return {level_whole, level_micro, capacity, fill_rate, amount}
"""

# Redis identifies loaded scripts by the SHA1 of their exact source
FILL_BUCKET_SCRIPT_SHA = hashlib.sha1(FILL_BUCKET_SCRIPT.encode("utf-8")).hexdigest()
