"""
Runtime Module

Entry point wiring the rollup jobs to the store and the scheduler.
"""
