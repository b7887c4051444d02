import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("settlements", "0002_add_settlement_schedule"),
    ]

    operations = [
        migrations.AddField(
            model_name="professionalaccount",
            name="card_expiry_month",
            field=models.PositiveSmallIntegerField(
                blank=True,
                help_text="Expiry month of the saved card (1-12)",
                null=True,
                validators=[
                    django.core.validators.MinValueValidator(1),
                    django.core.validators.MaxValueValidator(12),
                ],
            ),
        ),
        migrations.AddField(
            model_name="professionalaccount",
            name="card_expiry_year",
            field=models.PositiveSmallIntegerField(
                blank=True,
                help_text="Expiry year of the saved card",
                null=True,
            ),
        ),
        migrations.AddField(
            model_name="professionalaccount",
            name="card_expiry_warned_at",
            field=models.DateTimeField(
                blank=True,
                help_text="When the upcoming card expiry was last announced",
                null=True,
            ),
        ),
        migrations.AddField(
            model_name="feecharge",
            name="idempotency_key",
            field=models.CharField(
                blank=True,
                default="",
                help_text="Key of the attempt whose gateway outcome is not known yet",
                max_length=255,
            ),
        ),
        migrations.AddField(
            model_name="payout",
            name="idempotency_key",
            field=models.CharField(
                blank=True,
                default="",
                help_text="Key of the transfer whose gateway outcome is not known yet",
                max_length=255,
            ),
        ),
        migrations.AddConstraint(
            model_name="professionalaccount",
            constraint=models.CheckConstraint(
                condition=models.Q(("card_expiry_month__isnull", True))
                | models.Q(("card_expiry_month__gte", 1), ("card_expiry_month__lte", 12)),
                name="professional_card_expiry_month_range",
            ),
        ),
        migrations.AddConstraint(
            model_name="appointmentrecord",
            constraint=models.CheckConstraint(
                condition=models.Q(("status__in", ["completed", "canceled"])),
                name="appointment_status_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="appointmentconfirmation",
            constraint=models.CheckConstraint(
                condition=models.Q(
                    (
                        "final_status__in",
                        [
                            "pending",
                            "client_confirmed",
                            "professional_confirmed",
                            "confirmed",
                            "disputed",
                            "confirmed_canceled",
                            "denied",
                        ],
                    )
                ),
                name="confirmation_final_status_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="appointmentconfirmation",
            constraint=models.CheckConstraint(
                condition=models.Q(("client_confirmation__in", ["unset", "true", "false"]))
                & models.Q(("professional_confirmation__in", ["unset", "true", "false"])),
                name="confirmation_flags_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="appointmentconfirmation",
            constraint=models.CheckConstraint(
                condition=models.Q(("dispute_resolution__in", ["none", "admin_confirmed", "admin_denied"])),
                name="confirmation_resolution_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="payoutcycle",
            constraint=models.CheckConstraint(
                condition=models.Q(("status__in", ["open", "processing", "closed", "failed"])),
                name="cycle_status_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="earning",
            constraint=models.CheckConstraint(
                condition=models.Q(
                    (
                        "status__in",
                        ["pending_confirmation", "confirmed", "charged", "paid", "canceled", "disputed"],
                    )
                ),
                name="earning_status_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="feecharge",
            constraint=models.CheckConstraint(
                condition=models.Q(("status__in", ["pending", "succeeded", "failed", "waived"])),
                name="fee_charge_status_valid",
            ),
        ),
        migrations.AddConstraint(
            model_name="payout",
            constraint=models.CheckConstraint(
                condition=models.Q(("status__in", ["pending", "processing", "completed", "failed"])),
                name="payout_status_valid",
            ),
        ),
    ]
