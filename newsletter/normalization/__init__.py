"""Address normalization package.

Turns stored subscriber addresses into values that are safe to hand to
the email gateway.
"""
