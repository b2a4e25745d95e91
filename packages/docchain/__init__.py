"""Docchain: event-driven document processing pipelines.

Middlewares consume document events from work queues, filter them with
conditions, transform them and publish new events on their channels.
"""

__version__ = "0.1.0"
