"""
Test suite for the clinic booking engine.

Covers slot validation, the status lifecycle, booking, payments and intake.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
