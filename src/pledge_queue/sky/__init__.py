"""Blackbaud SKY gift API client and request models."""
