"""Email content extraction and filtering"""
from .models import RawMessage, ExtractedEmail, BodySource, PayloadFormat

__all__ = ['RawMessage', 'ExtractedEmail', 'BodySource', 'PayloadFormat']
