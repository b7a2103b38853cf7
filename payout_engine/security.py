import time
import logging
import asyncio
from collections import defaultdict
from functools import wraps

from aiogram.types import Message
from aiohttp import web

from .config import MAX_WEBHOOK_PAYLOAD, WEBHOOK_RATE_LIMIT

logger = logging.getLogger(__name__)

TEXT = {
    "rate_limited": "You are sending commands too quickly. Please wait a moment and try again.",
}


class RateLimiter:
    def __init__(self):
        # Request timestamps per (user, request type)
        self.user_requests = defaultdict(list)
        # Track repeated abuse
        self.suspicious_activity = defaultdict(int)
        self.banned_users = set()
        # Webhook callers by IP
        self.ip_requests = defaultdict(list)
        self.cleanup_interval = 3600  # 1 hour

    async def start_cleanup_task(self):
        """Start periodic cleanup of old rate limit data"""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self._cleanup_old_data()

    def _cleanup_old_data(self):
        """Remove request data older than an hour"""
        current_time = time.time()
        for store in (self.user_requests, self.ip_requests):
            for key in list(store.keys()):
                store[key] = [t for t in store[key] if current_time - t < 3600]
                if not store[key]:
                    del store[key]

        logger.info(f"Cleaned up rate limiting data. Tracking {len(self.user_requests)} users")

    def is_rate_limited(self, user_id, limit=5, period=60, request_type="general"):
        """
        Check if a user is exceeding rate limits

        Args:
            user_id: The Telegram user ID
            limit: Maximum number of requests allowed in the period
            period: Time period in seconds
            request_type: Separate budget per request type

        Returns:
            bool: True if user should be rate limited, False otherwise
        """
        if user_id in self.banned_users:
            logger.warning(f"Banned user {user_id} attempted to use the bot")
            return True

        current_time = time.time()
        key = (user_id, request_type)
        self.user_requests[key].append(current_time)

        recent_requests = sum(1 for t in self.user_requests[key] if current_time - t < period)
        if recent_requests > limit:
            self.suspicious_activity[user_id] += 1
            if self.suspicious_activity[user_id] > 5:
                logger.warning(f"User {user_id} temporarily banned for excessive requests")
                self.banned_users.add(user_id)

            logger.warning(f"Rate limit exceeded for user {user_id} ({request_type}): {recent_requests} requests in {period}s")
            return True

        return False

    def track_ip(self, ip_address, limit=WEBHOOK_RATE_LIMIT, period=10):
        """
        Track webhook requests from an IP address

        Returns:
            bool: True if the IP should be blocked, False otherwise
        """
        current_time = time.time()
        self.ip_requests[ip_address].append(current_time)

        recent_requests = sum(1 for t in self.ip_requests[ip_address] if current_time - t < period)
        if recent_requests > limit:
            logger.warning(f"Too many webhook requests from IP {ip_address}: {recent_requests} requests in {period}s")
            return True

        return False


# Create a global rate limiter instance
rate_limiter = RateLimiter()


def rate_limit(limit=5, period=60, key=None):
    """
    Decorator to apply rate limiting to bot command handlers

    Args:
        limit: Maximum number of requests allowed in the period
        period: Time period in seconds
        key: Optional key to use different rate limits for different handlers
    """
    def decorator(handler):
        @wraps(handler)
        async def wrapper(message: Message, *args, **kwargs):
            user_id = message.from_user.id
            request_type = key or handler.__name__

            if rate_limiter.is_rate_limited(user_id, limit, period, request_type):
                await message.answer(TEXT["rate_limited"])
                return

            return await handler(message, *args, **kwargs)
        return wrapper
    return decorator


@web.middleware
async def webhook_security_middleware(request, handler):
    """Throttle webhook callers and reject oversized payloads."""
    if not request.path.startswith("/webhooks/"):
        return await handler(request)

    ip = request.remote
    if rate_limiter.track_ip(ip):
        return web.json_response(
            {"status": "error", "code": "rate_limited", "message": "Too many requests"}, status=429
        )

    if request.content_length and request.content_length > MAX_WEBHOOK_PAYLOAD:
        logger.warning(f"Oversized webhook payload from IP: {ip}")
        return web.json_response(
            {"status": "error", "code": "payload_too_large", "message": "Payload too large"}, status=413
        )

    return await handler(request)


async def start_security_tasks():
    """Start security-related background tasks"""
    return asyncio.create_task(rate_limiter.start_cleanup_task())
