"""
Authentication package for the Flask app.

Sign-in and sign-up by emailed verification code, plus federated sign-in,
all delegated to a hosted identity provider (Clerk Frontend API). The app
keeps no credentials or sessions of its own.
"""
