"""
Clinic queue engine test suite
"""
