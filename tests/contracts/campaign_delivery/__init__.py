# Campaign Delivery Service Contracts

"""
Campaign Delivery Service Contract Module

This module contains:
- data_contract.py: domain model re-exports and test data factories
"""
