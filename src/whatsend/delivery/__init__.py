"""
WhatSend Delivery

Durable outbound queue and the worker that drains it.
"""

from whatsend.delivery.media import FetchedMedia, MediaFetcher, MediaFetchError
from whatsend.delivery.queue import DeliveryQueue, JobSnapshot
from whatsend.delivery.rate_limit import RollingRateLimiter
from whatsend.delivery.worker import DeliveryWorker

__all__ = [
    "DeliveryQueue",
    "DeliveryWorker",
    "FetchedMedia",
    "JobSnapshot",
    "MediaFetchError",
    "MediaFetcher",
    "RollingRateLimiter",
]
