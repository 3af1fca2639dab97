# Generated migration for Messaging app

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('organizations', '0001_initial'),
        ('accounts', '0001_initial'),
        ('marketing', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='MessageLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('template_name', models.CharField(blank=True, max_length=100, null=True, verbose_name='Template')),
                ('body', models.TextField(verbose_name='Message Body')),
                ('media_url', models.URLField(blank=True, max_length=500, null=True, verbose_name='Media URL')),
                ('status', models.CharField(choices=[('sent', 'Sent'), ('failed', 'Failed')], max_length=20, verbose_name='Status')),
                ('via', models.CharField(choices=[('evolution', 'Evolution API')], default='evolution', max_length=20, verbose_name='Channel')),
                ('gateway_message_id', models.CharField(blank=True, max_length=128, null=True, verbose_name='Gateway Message ID')),
                ('error_message', models.TextField(blank=True, null=True, verbose_name='Error Message')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('campaign', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='message_logs', to='marketing.campaign', verbose_name='Campaign')),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='message_logs', to='accounts.customer', verbose_name='Customer')),
                ('restaurant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='message_logs', to='organizations.restaurant', verbose_name='Restaurant')),
            ],
            options={
                'verbose_name': 'Message Log',
                'verbose_name_plural': 'Message Logs',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['customer', 'created_at'], name='msglog_customer_idx'),
                    models.Index(fields=['campaign', 'status'], name='msglog_campaign_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='EngagementMetric',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('messages_sent', models.PositiveIntegerField(default=0, verbose_name='Messages Sent')),
                ('messages_opened', models.PositiveIntegerField(default=0, verbose_name='Messages Opened')),
                ('orders_after_promo', models.PositiveIntegerField(default=0, verbose_name='Orders After Promo')),
                ('score', models.PositiveSmallIntegerField(default=0, verbose_name='Score')),
                ('last_computed', models.DateTimeField(blank=True, null=True, verbose_name='Last Computed')),
                ('customer', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='engagement', to='accounts.customer', verbose_name='Customer')),
                ('restaurant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='engagement_metrics', to='organizations.restaurant', verbose_name='Restaurant')),
            ],
            options={
                'verbose_name': 'Engagement Metric',
                'verbose_name_plural': 'Engagement Metrics',
            },
        ),
    ]
