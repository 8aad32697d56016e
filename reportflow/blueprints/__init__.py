"""
Report Review Workflow
Blueprint registry.
"""
