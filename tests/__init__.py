"""Test suite for the technical-assistance webhook router."""
