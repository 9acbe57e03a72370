"""Test suite for Singlecell-Refinery."""
