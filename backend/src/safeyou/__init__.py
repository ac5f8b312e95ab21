"""Realtime building blocks for the SafeYou chat backend."""
