"""
Engine Scripts Module

Available scripts:
    - validate_workflow.py: Checks a workflow definition and prints a summary

Usage:
    python -m scripts.validate_workflow path/to/definition.json
"""
