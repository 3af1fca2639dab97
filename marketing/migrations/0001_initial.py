# Generated migration for Marketing app

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.core.validators


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('organizations', '0001_initial'),
        ('accounts', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Campaign',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('message', models.TextField(verbose_name='Message')),
                ('media_url', models.URLField(blank=True, help_text='Optional image or document sent with the message', max_length=500, null=True, verbose_name='Media URL')),
                ('template_name', models.CharField(blank=True, help_text='Optional template tag, kept on every message log entry', max_length=100, null=True, verbose_name='Template')),
                ('audience', models.CharField(choices=[('all', 'All Customers'), ('recent', 'Recently Active'), ('inactive', 'Inactive'), ('explicit', 'Selected Customers')], default='all', max_length=20, verbose_name='Audience')),
                ('scheduled_for', models.DateTimeField(verbose_name='Scheduled For')),
                ('delay_seconds', models.PositiveIntegerField(default=5, validators=[django.core.validators.MinValueValidator(0)], verbose_name='Delay Between Messages (seconds)')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='pending', max_length=20, verbose_name='Status')),
                ('heartbeat_at', models.DateTimeField(blank=True, help_text='Set while a processor invocation is working this campaign', null=True, verbose_name='Lease Heartbeat')),
                ('total_recipients', models.PositiveIntegerField(default=0, verbose_name='Total Recipients')),
                ('sent_count', models.PositiveIntegerField(default=0, verbose_name='Sent Count')),
                ('failed_count', models.PositiveIntegerField(default=0, verbose_name='Failed Count')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Updated At')),
                ('completed_at', models.DateTimeField(blank=True, null=True, verbose_name='Completed At')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_campaigns', to=settings.AUTH_USER_MODEL, verbose_name='Created By')),
                ('restaurant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='campaigns', to='organizations.restaurant', verbose_name='Restaurant')),
            ],
            options={
                'verbose_name': 'Campaign',
                'verbose_name_plural': 'Campaigns',
                'ordering': ['-scheduled_for'],
                'indexes': [
                    models.Index(fields=['status', 'scheduled_for'], name='campaign_due_idx'),
                    models.Index(fields=['restaurant', 'scheduled_for'], name='campaign_tenant_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CampaignRecipient',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('sent', 'Sent'), ('failed', 'Failed')], default='pending', max_length=20, verbose_name='Status')),
                ('permanently_failed', models.BooleanField(default=False, verbose_name='Permanently Failed')),
                ('retry_count', models.PositiveSmallIntegerField(default=0, verbose_name='Attempts')),
                ('last_retry_at', models.DateTimeField(blank=True, null=True, verbose_name='Last Attempt At')),
                ('error_message', models.TextField(blank=True, null=True, verbose_name='Error Message')),
                ('gateway_message_id', models.CharField(blank=True, max_length=128, null=True, verbose_name='Gateway Message ID')),
                ('sent_at', models.DateTimeField(blank=True, null=True, verbose_name='Sent At')),
                ('campaign', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='recipients', to='marketing.campaign', verbose_name='Campaign')),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='campaign_receipts', to='accounts.customer', verbose_name='Customer')),
            ],
            options={
                'verbose_name': 'Campaign Recipient',
                'verbose_name_plural': 'Campaign Recipients',
                'unique_together': {('campaign', 'customer')},
                'indexes': [
                    models.Index(fields=['campaign', 'status'], name='recipient_status_idx'),
                ],
            },
        ),
    ]
