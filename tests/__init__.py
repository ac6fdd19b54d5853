"""
Test suite for the cytometry clustering pipeline

This package contains unit tests for the SOM trainer, metaclustering and
aggregation, plus integration tests for the complete pipeline.
"""
