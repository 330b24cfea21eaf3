"""
Test package marker.

Lets pytest import tests as a package so modules can share the fakes in `tests.conftest`.
"""
