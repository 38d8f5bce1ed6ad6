from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("invoicing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="customer",
            name="preferred_payment_method_id",
            field=models.CharField(blank=True, max_length=255),
        ),
    ]
