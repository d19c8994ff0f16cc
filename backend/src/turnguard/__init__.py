"""Conversation integrity and recovery service."""
