"""Test suite for the order settlement service."""
