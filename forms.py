from flask_wtf import FlaskForm
from wtforms import (
    StringField, FloatField, SubmitField, SelectField,
    DateField, TimeField, DateTimeLocalField, PasswordField,
    TextAreaField, IntegerField
)
from wtforms.validators import (
    DataRequired, NumberRange, Optional, Length, AnyOf, EqualTo, InputRequired, Email,
    ValidationError
)
from datetime import date
# CSRF is enabled by FlaskForm + CSRFProtect in app.py


# ---------------------- ACCOUNT FORMS ----------------------
class RegisterForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=150)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=6)])
    confirm_password = PasswordField(
        "Confirm Password",
        validators=[DataRequired(), EqualTo('password', message='Passwords must match.')]
    )
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    role = SelectField(
        "I am a",
        choices=[('farmer', 'Farmer'), ('agent', 'Field Agent')],
        validators=[DataRequired(), AnyOf(['farmer', 'agent'])]
    )
    phone_number = StringField("Phone Number", validators=[Optional(), Length(max=30)])
    location = StringField("Location", validators=[Optional(), Length(max=250)])
    submit = SubmitField("Create Account")


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Length(max=150)])
    password = PasswordField("Password", validators=[DataRequired()])
    submit = SubmitField("Login")


# ---------------------- FARMER FORM ----------------------
class AddFarmerForm(FlaskForm):
    """
    Either pick an existing farmer account (profile_id) or enter the details
    of a farmer who has no account.
    """
    profile_id = IntegerField("Existing Farmer", validators=[Optional()])
    full_name = StringField("Full Name", validators=[Optional(), Length(max=150)])
    phone_number = StringField("Phone Number", validators=[Optional(), Length(max=30)])
    location = StringField("Location", validators=[Optional(), Length(max=250)])
    submit = SubmitField("Add Farmer")

    def validate(self, extra_validators=None):
        rv = super().validate(extra_validators=extra_validators)
        if not rv:
            return False

        if self.profile_id.data:
            return True

        for field in (self.full_name, self.phone_number, self.location):
            if not (field.data or '').strip():
                field.errors.append("This field is required for a new farmer.")
                rv = False
        return rv


# ---------------------- COLLECTION FORMS ----------------------
class ScheduleCollectionForm(FlaskForm):
    farmer_id = IntegerField("Farmer", validators=[DataRequired()])
    scheduled_date = DateField("Collection Date", format="%Y-%m-%d", validators=[DataRequired()])
    scheduled_time = TimeField("Collection Time", format="%H:%M", validators=[DataRequired()])
    quantity_liters = FloatField(
        "Expected Quantity (Liters)",
        validators=[Optional(), NumberRange(min=0, message="Quantity cannot be negative")]
    )
    notes = TextAreaField("Notes (Optional)", validators=[Optional(), Length(max=1000)])
    submit = SubmitField("Schedule Collection")

    def validate_scheduled_date(self, field):
        if field.data and field.data < date.today():
            raise ValidationError("Collection date cannot be in the past.")


class RecordCollectionForm(FlaskForm):
    quantity_liters = FloatField(
        "Quantity (Liters)",
        validators=[
            InputRequired(message="Enter the collected quantity (0 allowed)"),
            NumberRange(min=0, message="Quantity cannot be negative")
        ]
    )
    submit = SubmitField("Record Collection")


# ---------------------- MESSAGE / ANNOUNCEMENT FORMS ----------------------
class MessageForm(FlaskForm):
    content = TextAreaField("Message", validators=[DataRequired(), Length(max=2000)])


class AnnouncementForm(FlaskForm):
    title = StringField('Title', validators=[DataRequired(), Length(max=100)])
    content = TextAreaField('Content', validators=[DataRequired()])
    expires_at = DateTimeLocalField('Expires At (Optional)', format='%Y-%m-%dT%H:%M', validators=[Optional()])
    submit = SubmitField('Post Announcement')
