"""Harness library for the UDP ICMP error propagation conformance suite."""
