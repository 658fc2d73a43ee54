"""
Custom exceptions for the Credential Fulfillment Engine.

Defines application-specific exception classes for configuration problems,
validation failures, lifecycle conflicts, encryption failures and attempts
to rewrite append-only records.
"""

from typing import Optional, Dict, Any, List


class CredentialEngineError(Exception):
    """Base exception for all credential engine errors."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.
        
        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(CredentialEngineError):
    """Raised when configuration is invalid or missing."""
    pass


class ValidationError(CredentialEngineError):
    """Raised when data validation fails."""
    
    def __init__(self, message: str, field: Optional[str] = None,
                 value: Optional[Any] = None, expected_type: Optional[str] = None):
        """
        Initialize validation error.
        
        Args:
            message: Error message
            field: Field name that failed validation
            value: Invalid value
            expected_type: Expected data type
        """
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if expected_type:
            details["expected_type"] = expected_type
            
        super().__init__(message, details)
        self.field = field
        self.value = value
        self.expected_type = expected_type


class EmptyBatchError(ValidationError):
    """Raised when an upload contains no valid credential rows."""
    
    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message, field="credentials")
        self.errors = list(errors or [])
        self.details["error_count"] = len(self.errors)


class NotFoundError(CredentialEngineError):
    """Raised when a referenced entity does not exist."""
    
    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{entity} not found",
            {"entity": entity, "entity_id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(CredentialEngineError):
    """Raised when an operation is not allowed in the entity's current state."""
    
    def __init__(self, message: str, entity: Optional[str] = None,
                 entity_id: Optional[Any] = None, current_state: Optional[str] = None):
        """
        Initialize state conflict error.
        
        Args:
            message: Error message
            entity: Entity kind (e.g. "stock_request")
            entity_id: Identifier of the entity
            current_state: State that blocked the operation
        """
        details = {}
        if entity:
            details["entity"] = entity
        if entity_id is not None:
            details["entity_id"] = str(entity_id)
        if current_state:
            details["current_state"] = current_state
        
        super().__init__(message, details)
        self.entity = entity
        self.entity_id = entity_id
        self.current_state = current_state


class PermissionDeniedError(CredentialEngineError):
    """Raised when an actor's role does not allow the operation."""
    
    def __init__(self, message: str, required_role: Optional[str] = None,
                 actual_role: Optional[str] = None):
        details = {}
        if required_role:
            details["required_role"] = required_role
        if actual_role:
            details["actual_role"] = actual_role
        
        super().__init__(message, details)
        self.required_role = required_role
        self.actual_role = actual_role


class CryptoError(CredentialEngineError):
    """Raised when encrypting or decrypting a credential payload fails."""
    
    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message, {"action": action} if action else None)
        self.action = action


class ImmutabilityViolationError(CredentialEngineError):
    """Raised on an attempt to modify or delete an append-only record."""
    
    def __init__(self, entity_type: str, entity_id: Any, reason: str):
        super().__init__(
            f"Cannot modify {entity_type}: {reason}",
            {"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
