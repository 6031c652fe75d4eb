"""Clients for the message broker and the search engine."""
