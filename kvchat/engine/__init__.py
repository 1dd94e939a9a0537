"""
kvchat :: Engine
"""
