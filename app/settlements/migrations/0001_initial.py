import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django_fsm
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="PlatformSetting",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("key", models.CharField(help_text="Setting name, e.g. platform_fee_percent", max_length=100, unique=True)),
                ("value", models.CharField(help_text="Setting value as text", max_length=255)),
                ("description", models.TextField(blank=True, default="", help_text="What the setting controls")),
            ],
            options={
                "verbose_name": "Platform Setting",
                "verbose_name_plural": "Platform Settings",
                "ordering": ["key"],
            },
        ),
        migrations.CreateModel(
            name="ProfessionalAccount",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("display_name", models.CharField(blank=True, default="", help_text="Professional's display name", max_length=255)),
                ("stripe_customer_id", models.CharField(blank=True, help_text="Stripe Customer ID (cus_xxx) charged for platform fees", max_length=255, null=True)),
                ("default_payment_method_id", models.CharField(blank=True, help_text="Stripe PaymentMethod ID (pm_xxx) used for off-session fee charges", max_length=255, null=True)),
                ("stripe_account_id", models.CharField(blank=True, help_text="Stripe Connect account ID (acct_xxx) receiving payouts", max_length=255, null=True, unique=True)),
                (
                    "fee_percent_override",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Platform fee percent for this professional; global setting when empty",
                        max_digits=5,
                        null=True,
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0")),
                            django.core.validators.MaxValueValidator(Decimal("100")),
                        ],
                    ),
                ),
                ("payment_blocked_at", models.DateTimeField(blank=True, db_index=True, help_text="When the account was blocked for unpaid platform fees", null=True)),
                ("payment_block_reason", models.TextField(blank=True, default="", help_text="Why the account was blocked")),
            ],
            options={
                "verbose_name": "Professional Account",
                "verbose_name_plural": "Professional Accounts",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("fee_percent_override__isnull", True))
                        | models.Q(("fee_percent_override__gte", 0), ("fee_percent_override__lte", 100)),
                        name="professional_fee_override_range",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutCycle",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("start_date", models.DateTimeField(help_text="Window start (Monday 00:00 UTC, inclusive)", unique=True)),
                ("end_date", models.DateTimeField(help_text="Window end (exclusive)")),
                ("cutoff_date", models.DateTimeField(db_index=True, help_text="When the cycle becomes chargeable")),
                (
                    "status",
                    models.CharField(
                        choices=[("open", "Open"), ("processing", "Processing"), ("closed", "Closed"), ("failed", "Failed")],
                        db_index=True,
                        default="open",
                        help_text="Cycle lifecycle status",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, help_text="When the cycle was closed or marked failed", null=True)),
                ("failure_reason", models.TextField(blank=True, default="", help_text="Why the cycle was marked failed")),
            ],
            options={
                "verbose_name": "Payout Cycle",
                "verbose_name_plural": "Payout Cycles",
                "ordering": ["-start_date"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_date__gt", models.F("start_date"))),
                        name="cycle_end_after_start",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("cutoff_date__gte", models.F("end_date"))),
                        name="cycle_cutoff_after_end",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AppointmentRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("client_id", models.UUIDField(db_index=True, help_text="ID of the client who booked the session")),
                ("start_time", models.DateTimeField(help_text="Session start")),
                ("end_time", models.DateTimeField(db_index=True, help_text="Session end")),
                ("rate_cents", models.PositiveIntegerField(help_text="Hourly rate in cents")),
                ("adjusted_rate_cents", models.PositiveIntegerField(blank=True, help_text="Adjusted hourly rate in cents; takes precedence over rate_cents", null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("completed", "Completed"), ("canceled", "Canceled")],
                        db_index=True,
                        default="completed",
                        help_text="Booking-side status as last reported",
                        max_length=20,
                    ),
                ),
                (
                    "professional",
                    models.ForeignKey(
                        help_text="Professional who delivered the session",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments",
                        to="settlements.professionalaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Appointment Record",
                "verbose_name_plural": "Appointment Records",
                "ordering": ["-end_time"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_time__gt", models.F("start_time"))),
                        name="appointment_end_after_start",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="AppointmentConfirmation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("client_id", models.UUIDField(db_index=True, help_text="Client party of the appointment")),
                (
                    "client_confirmation",
                    models.CharField(
                        choices=[("unset", "Unset"), ("true", "Occurred"), ("false", "Did not occur")],
                        default="unset",
                        help_text="Client's answer",
                        max_length=10,
                    ),
                ),
                ("client_confirmed_at", models.DateTimeField(blank=True, help_text="When the client answered", null=True)),
                (
                    "professional_confirmation",
                    models.CharField(
                        choices=[("unset", "Unset"), ("true", "Occurred"), ("false", "Did not occur")],
                        default="unset",
                        help_text="Professional's answer",
                        max_length=10,
                    ),
                ),
                ("professional_confirmed_at", models.DateTimeField(blank=True, help_text="When the professional answered", null=True)),
                (
                    "final_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("client_confirmed", "Client Confirmed"),
                            ("professional_confirmed", "Professional Confirmed"),
                            ("confirmed", "Confirmed"),
                            ("disputed", "Disputed"),
                            ("confirmed_canceled", "Cancellation Confirmed"),
                            ("denied", "Dispute Denied"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Derived from both answers and the dispute resolution",
                        max_length=30,
                    ),
                ),
                ("dispute_reason", models.TextField(blank=True, default="", help_text="Reason given by the party that answered 'did not occur'")),
                ("dispute_created_at", models.DateTimeField(blank=True, help_text="When the confirmation became disputed", null=True)),
                ("dispute_resolved_at", models.DateTimeField(blank=True, help_text="When an admin resolved the dispute", null=True)),
                (
                    "dispute_resolution",
                    models.CharField(
                        choices=[
                            ("none", "None"),
                            ("admin_confirmed", "Admin Confirmed Cancellation"),
                            ("admin_denied", "Admin Denied Dispute"),
                        ],
                        default="none",
                        help_text="Admin decision",
                        max_length=20,
                    ),
                ),
                ("resolution_notes", models.TextField(blank=True, default="", help_text="Admin notes recorded with the decision")),
                ("resolved_by", models.CharField(blank=True, default="", help_text="Identifier of the admin who resolved the dispute", max_length=255)),
                ("auto_confirmed_at", models.DateTimeField(blank=True, help_text="When the timeout confirmed on behalf of a silent party", null=True)),
                ("reminder_sent_at", models.DateTimeField(blank=True, help_text="When the confirmation reminder was emitted", null=True)),
                (
                    "appointment",
                    models.OneToOneField(
                        help_text="Appointment being confirmed",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="confirmation",
                        to="settlements.appointmentrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Appointment Confirmation",
                "verbose_name_plural": "Appointment Confirmations",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["final_status", "reminder_sent_at"], name="confirmation_status_remind_idx")],
            },
        ),
        migrations.CreateModel(
            name="FeeCharge",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("total_gross_cents", models.PositiveBigIntegerField(default=0, help_text="Gross of the covered earnings in cents")),
                ("platform_fee_percent", models.DecimalField(decimal_places=2, help_text="Platform fee percent in effect when the charge was created", max_digits=5)),
                ("amount_cents", models.PositiveBigIntegerField(help_text="Fee amount to charge in cents")),
                ("earnings_count", models.PositiveIntegerField(default=0, help_text="Number of earnings covered by the charge")),
                ("currency", models.CharField(default="usd", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("pending", "Pending"), ("succeeded", "Succeeded"), ("failed", "Failed"), ("waived", "Waived")],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the fee charge (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("attempt_count", models.PositiveSmallIntegerField(default=0, help_text="Gateway attempts made so far")),
                ("last_attempt_at", models.DateTimeField(blank=True, help_text="When the last attempt started", null=True)),
                ("next_retry_at", models.DateTimeField(blank=True, db_index=True, help_text="Earliest time for the next attempt", null=True)),
                ("failure_code", models.CharField(blank=True, default="", help_text="Error code of the last failed attempt", max_length=64)),
                ("failure_message", models.TextField(blank=True, default="", help_text="Error message of the last failed attempt")),
                ("gateway_reference", models.CharField(blank=True, help_text="Gateway charge reference (pi_xxx)", max_length=255, null=True, unique=True)),
                ("charged_at", models.DateTimeField(blank=True, help_text="When the charge succeeded", null=True)),
                ("failed_at", models.DateTimeField(blank=True, help_text="When the charge failed for good", null=True)),
                ("waived_at", models.DateTimeField(blank=True, help_text="When an admin waived the fee", null=True)),
                ("waived_by", models.CharField(blank=True, default="", help_text="Identifier of the admin who waived the fee", max_length=255)),
                ("waived_reason", models.TextField(blank=True, default="", help_text="Why the fee was waived")),
                (
                    "cycle",
                    models.ForeignKey(
                        help_text="Cycle whose earnings the fee covers",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="fee_charges",
                        to="settlements.payoutcycle",
                    ),
                ),
                (
                    "professional",
                    models.ForeignKey(
                        help_text="Professional being charged",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="fee_charges",
                        to="settlements.professionalaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Fee Charge",
                "verbose_name_plural": "Fee Charges",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "next_retry_at"], name="feecharge_status_retry_idx"),
                    models.Index(fields=["professional", "status"], name="feecharge_prof_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "failed"), _negated=True),
                        fields=("professional", "cycle"),
                        name="one_active_fee_charge_per_pair",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Payout",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("gross_total_cents", models.PositiveBigIntegerField(help_text="Sum of gross over the paid earnings")),
                ("fee_total_cents", models.PositiveBigIntegerField(help_text="Sum of platform fees over the paid earnings")),
                ("net_total_cents", models.PositiveBigIntegerField(help_text="Amount transferred to the professional")),
                ("earnings_count", models.PositiveIntegerField(help_text="Number of earnings paid")),
                ("currency", models.CharField(default="usd", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the payout (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("transfer_reference", models.CharField(blank=True, help_text="Gateway transfer reference (tr_xxx)", max_length=255, null=True, unique=True)),
                ("attempt_count", models.PositiveSmallIntegerField(default=0, help_text="Transfer attempts made")),
                ("processed_at", models.DateTimeField(blank=True, help_text="When the payout completed", null=True)),
                ("failed_at", models.DateTimeField(blank=True, help_text="When the payout failed", null=True)),
                ("failure_reason", models.TextField(blank=True, default="", help_text="Why the payout failed")),
                (
                    "cycle",
                    models.ForeignKey(
                        help_text="Cycle whose earnings are paid",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="settlements.payoutcycle",
                    ),
                ),
                (
                    "fee_charge",
                    models.ForeignKey(
                        help_text="Settled fee charge that allowed the payout",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="settlements.feecharge",
                    ),
                ),
                (
                    "professional",
                    models.ForeignKey(
                        help_text="Professional receiving the payout",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="settlements.professionalaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout",
                "verbose_name_plural": "Payouts",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["cycle", "status"], name="payout_cycle_status_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("professional", "cycle"), name="one_payout_per_pair"),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("net_total_cents", models.F("gross_total_cents") - models.F("fee_total_cents"))
                        ),
                        name="payout_net_equals_gross_minus_fee",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Earning",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("gross_cents", models.PositiveBigIntegerField(help_text="Session price in cents")),
                ("platform_fee_percent", models.DecimalField(decimal_places=2, help_text="Platform fee percent applied", max_digits=5)),
                ("platform_fee_cents", models.PositiveBigIntegerField(help_text="Platform fee in cents")),
                ("net_cents", models.PositiveBigIntegerField(help_text="Amount owed to the professional in cents")),
                ("duration_minutes", models.PositiveIntegerField(help_text="Billed session length in minutes")),
                ("hourly_rate_cents", models.PositiveIntegerField(help_text="Hourly rate in cents used for the calculation")),
                ("session_start", models.DateTimeField(help_text="Session start")),
                ("session_end", models.DateTimeField(help_text="Session end")),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending_confirmation", "Pending Confirmation"),
                            ("confirmed", "Confirmed"),
                            ("charged", "Fee Charged"),
                            ("paid", "Paid"),
                            ("canceled", "Canceled"),
                            ("disputed", "Disputed"),
                        ],
                        db_index=True,
                        default="pending_confirmation",
                        help_text="Current state of the earning (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("charged_at", models.DateTimeField(blank=True, help_text="When the platform fee was settled", null=True)),
                ("paid_at", models.DateTimeField(blank=True, help_text="When the payout completed", null=True)),
                ("canceled_at", models.DateTimeField(blank=True, help_text="When the earning was canceled", null=True)),
                ("disputed_at", models.DateTimeField(blank=True, help_text="When the earning was reversed by a dispute", null=True)),
                (
                    "appointment",
                    models.OneToOneField(
                        help_text="Appointment this earning was created for",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="earning",
                        to="settlements.appointmentrecord",
                    ),
                ),
                (
                    "cycle",
                    models.ForeignKey(
                        help_text="Payout cycle covering the session date",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="earnings",
                        to="settlements.payoutcycle",
                    ),
                ),
                (
                    "fee_charge",
                    models.ForeignKey(
                        blank=True,
                        help_text="Fee charge that settled this earning's platform fee",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="earnings",
                        to="settlements.feecharge",
                    ),
                ),
                (
                    "payout",
                    models.ForeignKey(
                        blank=True,
                        help_text="Payout that disbursed this earning",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="earnings",
                        to="settlements.payout",
                    ),
                ),
                (
                    "professional",
                    models.ForeignKey(
                        help_text="Professional the money is owed to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="earnings",
                        to="settlements.professionalaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Earning",
                "verbose_name_plural": "Earnings",
                "ordering": ["-session_start"],
                "indexes": [
                    models.Index(fields=["professional", "cycle", "status"], name="earning_prof_cycle_status_idx"),
                    models.Index(fields=["cycle", "status"], name="earning_cycle_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("net_cents", models.F("gross_cents") - models.F("platform_fee_cents"))
                        ),
                        name="earning_net_equals_gross_minus_fee",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("gross_cents__gt", 0)),
                        name="earning_gross_positive",
                    ),
                ],
            },
        ),
    ]
