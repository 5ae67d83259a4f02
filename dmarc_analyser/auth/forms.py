"""
Flask-WTF forms for the authentication blueprint.

The forms read JSON request bodies (Flask-WTF uses ``request.get_json()``
when the request is JSON) and are built with CSRF disabled.
"""

from __future__ import annotations

from flask_wtf import FlaskForm
from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional


class RegisterForm(FlaskForm):
    """New account."""

    email = StringField(
        "Email",
        validators=[DataRequired(message="Email is required."), Email(message="Invalid email address."), Length(max=255)],
    )
    password = PasswordField(
        "Password",
        validators=[
            DataRequired(message="Password is required."),
            Length(min=8, max=128, message="Password must be at least 8 characters."),
        ],
    )
    name = StringField("Name", validators=[Optional(), Length(max=200)])


class LoginForm(FlaskForm):
    """Form for authenticating an existing user."""

    email = StringField("Email", validators=[DataRequired(message="Email is required.")])
    password = PasswordField("Password", validators=[DataRequired(message="Password is required.")])


class ForgotPasswordForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email()])


class ResetPasswordForm(FlaskForm):
    """Form for setting a new password after reset."""

    token = StringField("Token", validators=[DataRequired(message="Token is required.")])
    password = PasswordField(
        "Password",
        validators=[
            DataRequired(message="Password is required."),
            Length(min=8, max=128, message="Password must be at least 8 characters."),
        ],
    )


def first_error(form: FlaskForm) -> str:
    """Return the first validation message of *form*."""
    for errors in form.errors.values():
        if errors:
            return errors[0]
    return "Invalid input"
