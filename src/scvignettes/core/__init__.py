"""
Core computational components of scvignettes.

This module contains:
- Transcriptomics: Single-cell RNA-seq analysis steps
- Parallel: Interchangeable execution backends
- Ondisk: File-backed matrices and block-wise computation
- Utils: Shared utility functions
"""

__all__ = ["transcriptomics", "parallel", "ondisk", "utils"]
