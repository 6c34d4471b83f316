"""
Test Suite for the Anti-Dip Engine

Unit tests per engine module plus scheduler-level scenarios. Time is always
injected; nothing touches the network.
"""
