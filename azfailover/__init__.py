"""Availability zone failover drills for scheduler-managed container services."""

__version__ = "1.0.0"
