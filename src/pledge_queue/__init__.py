"""Durable retrying queue for posting donation pledges to the SKY gift API."""

__version__ = "0.1.0"
