"""bucketgate - a Redis-backed filling bucket rate limiter."""
