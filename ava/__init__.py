"""Showing scheduler for the Ava leasing assistant."""
