"""Clinic dashboard: JSON API and live notification stream."""
