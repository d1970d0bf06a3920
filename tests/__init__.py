"""Test suite for the SMART launch gateway."""
