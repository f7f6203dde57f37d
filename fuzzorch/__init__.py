"""
Top-level package for the fuzzing orchestrator.

Re-exports the public API from `fuzzorch.src` so that targets can write
`from fuzzorch import fuzz_target`.
"""

from .src import *  # re-export for convenience
