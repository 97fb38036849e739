"""
Test Suite for the Office Operations Engine

- Policy resolver, lifecycle machines and dispatcher (pure functions)
- Entity store, notification sink and expiry scanner
- Office service and HTTP routes
"""
