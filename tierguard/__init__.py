"""
tierguard - tier-based usage enforcement and subscription lifecycle engine.

Gates metered operations (AI generations, app creation, workflow executions,
feature access) behind subscription tier limits and manages the subscription
state machine.
"""

__version__ = "0.1.0"
