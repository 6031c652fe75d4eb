"""Coordination between the sync pipeline and the retention sweeper."""
