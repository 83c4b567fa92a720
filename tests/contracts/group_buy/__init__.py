# Group-Buy Service Contracts

"""
Group-Buy Service Contract Module

This module contains:
- data_contract.py: test data factories over the service's pydantic models
"""
