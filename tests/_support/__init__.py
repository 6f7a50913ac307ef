"""
Test support utilities for release-spine tests.

Fakes for the docker CLI, the remote host and the health endpoint live in
``fakes``; configuration builders live in ``builders``.
"""
