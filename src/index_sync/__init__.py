"""Kafka to Elasticsearch sync service with index retention sweeping."""

__version__ = "0.1.0"
