"""Test package for the adaptive PVT (PVT-BA).

Core tests drive the classifier and the trial state machine with a fake
clock, so no test waits on real time. The UI smoke tests use pygame's dummy
video driver to avoid opening real windows. Run ``pytest`` from the project
root.
"""
