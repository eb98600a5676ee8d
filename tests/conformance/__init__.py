"""Conformance tests against a live DUT.

These tests inject ICMP errors with scapy and observe the DUT's sockets
through the POSIX agent. They need NET_RAW on the runner.
"""
