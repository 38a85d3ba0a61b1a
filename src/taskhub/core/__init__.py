"""Dispatch engine: hashing, events, dispatcher, task state machine and hub."""
