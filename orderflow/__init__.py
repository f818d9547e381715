"""Orderflow - restaurant order lifecycle and kitchen dispatch service."""
