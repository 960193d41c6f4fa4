"""
orderflow package

Asynchronous order execution pipeline: a retrying job queue, a bounded worker pool
driving each order through routing -> building -> submitted -> confirmed, a price
router over simulated venues, and a broadcast bus that fans progress out to live
websocket subscribers.
"""

__version__ = "0.1.0"
