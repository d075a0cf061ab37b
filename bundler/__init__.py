"""Atomic two-transaction relay bundle submitter for LaunchLab buys."""

__version__ = "0.1.0"
