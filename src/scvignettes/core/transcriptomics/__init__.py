"""
Single-cell RNA-seq analysis for the vignettes.

This module provides the analysis steps the tutorials walk through:
quality control, normalization, feature selection, dimensionality
reduction, clustering and doublet detection.
"""

from .datasets import load_dataset
from .sc_rna_processor import ScRNAProcessor, ScRNAParameters

__all__ = ["ScRNAProcessor", "ScRNAParameters", "load_dataset"]
