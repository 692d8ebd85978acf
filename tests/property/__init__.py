"""
Persona - Property-Based Testing Suite

Property-based testing using Hypothesis for the attribute algebra and
event-sourcing invariants of the person domain.
"""
