"""
scvignettes: tutorial vignettes for single-cell RNA-seq analysis.
"""

__version__ = "0.1.0"
