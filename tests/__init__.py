"""Test suite for the budget sync server and client."""
