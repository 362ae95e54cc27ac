"""
Custom exceptions for the Nginx operator
"""


class NginxOperatorError(Exception):
    """Base exception for operator failures"""

    def __init__(self, message: str, resource: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.resource = resource


class SpecAnnotationError(NginxOperatorError):
    """The generated-from annotation on a Deployment could not be parsed"""


class InvalidSelectorError(NginxOperatorError):
    """An annotation filter expression is not a valid label selector"""

    def __init__(self, message: str, expression: str) -> None:
        super().__init__(message)
        self.expression = expression


class IPv6AllocationError(NginxOperatorError):
    """A global IPv6 address could not be reserved for an Ingress"""


class ConfigurationError(NginxOperatorError):
    """Operator configuration is invalid"""

    def __init__(self, message: str, setting: str | None = None) -> None:
        super().__init__(message)
        self.setting = setting


class ObjectGoneError(NginxOperatorError):
    """An object reported as already existing could not be read back"""
