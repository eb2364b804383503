"""
Route helpers for the simulator API.

- deps: API key security and shared state accessors
"""
