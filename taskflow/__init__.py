"""
Task lifecycle service: status state machine, submission staging and
evidence rendering, group submission propagation.
"""

__version__ = "1.0.0"
