"""
mongo-testenv Integration Tests

These tests start real MongoDB containers through the Docker daemon and are
skipped unless TESTENV_INTEGRATION=1. Tests run in file order: a passing run,
a failing run that leaves the cluster behind, then cleanup.

Port Range: 27110-27119 (to avoid conflicts with local MongoDB)
"""
