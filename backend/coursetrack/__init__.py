"""Course progress and quiz scoring backend.

The package is split into a small pure engine (`grading`, `progress`,
`reports`) operating on the in-memory models in `domain`, and the
FastAPI application around it (`main`, `services`, `repositories`,
`models`). Individual modules contain the concrete implementations and
documentation.
"""
