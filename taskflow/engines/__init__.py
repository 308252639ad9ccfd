"""
Engines - staging, rendering and the submission pipeline.
"""
