"""Conversational admission intake over SMS / WhatsApp.

Walks a user through the admission form, lets them review and correct
their answers, and books a follow-up meeting slot.
"""
