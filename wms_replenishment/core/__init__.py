"""
Pure replenishment logic: policy resolution, packaging hierarchy and cube capacity.
"""
