"""Test package for the dual n-back trainer.

Core tests drive the engine with a fake clock; UI smoke tests run headlessly
using pygame's dummy video/audio drivers. Run ``pytest`` from the project root.
"""
