from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="subscription",
            name="remote_updated_at",
            field=models.DateTimeField(
                blank=True,
                help_text="Creation time of the newest Stripe state applied by reconciliation",
                null=True,
            ),
        ),
    ]
