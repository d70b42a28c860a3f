"""VKGL consensus tool.

Normalizes the variant classifications shared by the VKGL diagnostic
laboratories, computes their consensus and synchronizes the result into a
variant store.
"""

__version__ = "1.0.0"
__author__ = "VKGL data team"
