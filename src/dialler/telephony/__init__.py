"""Telephony provider integration (status callbacks only)."""
