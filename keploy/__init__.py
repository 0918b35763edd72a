"""Record API calls and dependency outputs as test cases, and replay them as regression tests."""

__version__ = "0.1.0"