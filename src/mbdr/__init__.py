"""
mbdr - MCell Binary Data Reader and vesicle release analyzer

Reads compressed, versioned MCell binary reaction output and determines
synaptic vesicle release events and latencies across many simulation
seeds, using the Functional Core, Imperative Shell architecture.

Structure:
- analysis/ : Functional Core (container decoding, release detection)
- data/     : Imperative Shell (file access, threaded batch runs)
- reports/  : Statistics tables, text and CSV output
- plotting/ : Latency histograms
- config.py : Sensor topology and fusion model configuration
"""

__version__ = "0.1.0"
