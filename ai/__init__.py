"""
Decision Module

Asks ranked language-model backends for a trading decision and falls back to
a deterministic rule set when none answers usably.

Core principle: the SafetyFilter and order lifecycle remain the hard authority.
"""
