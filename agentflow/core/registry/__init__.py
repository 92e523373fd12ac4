from agentflow.core.registry.handlers import (
    DuplicateRegistrationError,
    NotRegistered,
    Registry,
)

__all__ = ['DuplicateRegistrationError', 'NotRegistered', 'Registry']
