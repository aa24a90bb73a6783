"""Lease-guarded execution of resumable task runs."""
