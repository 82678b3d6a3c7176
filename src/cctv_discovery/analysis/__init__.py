"""
Stream property analysis
"""

from .stream_analyzer import ComplianceRules, StreamAnalyzer

__all__ = ['ComplianceRules', 'StreamAnalyzer']
