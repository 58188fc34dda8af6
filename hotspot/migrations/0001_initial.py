# Generated migration file for initial database schema

import uuid

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Customer',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=255)),
                ('phone_number', models.CharField(db_index=True, max_length=16)),
                ('email', models.EmailField(blank=True, max_length=254)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='RouterDevice',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=255, unique=True)),
                ('ip_address', models.GenericIPAddressField(unique=True)),
                ('api_port', models.PositiveIntegerField(default=8728)),
                ('username', models.CharField(max_length=100)),
                ('password_encrypted', models.TextField()),
                ('status', models.CharField(choices=[('online', 'Online'), ('offline', 'Offline'), ('error', 'Error')], default='offline', max_length=20)),
                ('last_seen', models.DateTimeField(blank=True, null=True)),
                ('uptime_seconds', models.BigIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('router_identity', models.CharField(blank=True, max_length=100)),
                ('router_version', models.CharField(blank=True, max_length=50)),
                ('location', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('currency', models.CharField(default='UGX', max_length=3)),
                ('transaction_id', models.CharField(max_length=100, unique=True)),
                ('reference', models.CharField(blank=True, max_length=100)),
                ('gateway', models.CharField(default='manual', max_length=50)),
                ('package', models.CharField(max_length=50)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('failed', 'Failed'), ('refund_pending', 'Refund Pending'), ('refunded', 'Refunded')], default='pending', max_length=20)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='hotspot.customer')),
                ('router_device', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='hotspot.routerdevice')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Voucher',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=32, unique=True)),
                ('password', models.CharField(max_length=64)),
                ('profile', models.CharField(max_length=64)),
                ('validity_hours', models.PositiveIntegerField()),
                ('data_limit_mb', models.PositiveIntegerField(blank=True, null=True)),
                ('price', models.DecimalField(decimal_places=2, max_digits=10)),
                ('currency', models.CharField(default='UGX', max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('active', 'Active'), ('used', 'Used'), ('expired', 'Expired'), ('disabled', 'Disabled'), ('refunded', 'Refunded'), ('transferred', 'Transferred')], db_index=True, default='pending', max_length=20)),
                ('version', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('activated_at', models.DateTimeField(blank=True, null=True)),
                ('expires_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('used_at', models.DateTimeField(blank=True, null=True)),
                ('sms_sent_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('provision_attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('next_retry_at', models.DateTimeField(blank=True, null=True)),
                ('provision_lease_until', models.DateTimeField(blank=True, null=True)),
                ('needs_attention', models.BooleanField(default=False)),
                ('deprovision_pending', models.BooleanField(default=False)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='vouchers', to='hotspot.customer')),
                ('device', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='vouchers', to='hotspot.routerdevice')),
                ('payment', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='voucher', to='hotspot.payment')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'expires_at'], name='voucher_status_expiry_idx'),
                    models.Index(fields=['status', 'next_retry_at'], name='voucher_status_retry_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ProvisioningAttempt',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(choices=[('provision', 'Provision'), ('deprovision', 'Deprovision')], default='provision', max_length=20)),
                ('outcome', models.CharField(choices=[('success', 'Success'), ('failure', 'Failure')], max_length=20)),
                ('error_kind', models.CharField(blank=True, max_length=30)),
                ('error_detail', models.TextField(blank=True)),
                ('retry_count', models.PositiveIntegerField(default=0)),
                ('remote_id', models.CharField(blank=True, max_length=64)),
                ('already_present', models.BooleanField(default=False)),
                ('attempted_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('device', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='provisioning_attempts', to='hotspot.routerdevice')),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='provisioning_attempts', to='hotspot.voucher')),
            ],
            options={
                'ordering': ['-attempted_at'],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('outcome', 'success')), fields=('voucher', 'device', 'action'), name='unique_successful_provisioning'),
                ],
            },
        ),
        migrations.CreateModel(
            name='VoucherTransition',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event', models.CharField(max_length=30)),
                ('from_status', models.CharField(max_length=20)),
                ('to_status', models.CharField(max_length=20)),
                ('detail', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='transitions', to='hotspot.voucher')),
            ],
            options={
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='NotificationRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('transition', models.CharField(choices=[('activation', 'Activation'), ('transfer', 'Transfer')], max_length=20)),
                ('recipient', models.CharField(max_length=16)),
                ('message', models.TextField()),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('sending', 'Sending'), ('sent', 'Sent'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('sent_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='notifications', to='hotspot.voucher')),
            ],
            options={
                'ordering': ['-created_at'],
                'unique_together': {('voucher', 'transition')},
            },
        ),
        migrations.CreateModel(
            name='VoucherTransfer',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reason', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('from_customer', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='transfers_out', to='hotspot.customer')),
                ('from_voucher', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='transfer_out', to='hotspot.voucher')),
                ('to_customer', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='transfers_in', to='hotspot.customer')),
                ('to_voucher', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='transfer_in', to='hotspot.voucher')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
