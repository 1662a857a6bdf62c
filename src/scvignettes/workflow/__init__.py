"""
Vignette engine: workflow definitions, execution and HTML rendering.
"""
