"""
Core buffering components.

This package contains the shipping engine and its parts:
- Filter pipeline and masking filter
- Queue adapters (in-memory and WAL-backed)
- In-memory buffer
- Flush scheduler and retry executor
- Metrics collection
"""
