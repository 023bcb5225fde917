# Generated migration for LLMConfiguration model

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='LLMConfiguration',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('tenant_id', models.CharField(help_text='Owning tenant identifier', max_length=255, unique=True)),
                ('provider', models.CharField(choices=[('openrouter', 'OpenRouter'), ('openai', 'OpenAI'), ('anthropic', 'Anthropic'), ('google', 'Google')], default='openrouter', max_length=32)),
                ('api_key_encrypted', models.TextField(help_text='Tagged vault ciphertext of the provider API key')),
                ('base_url', models.CharField(blank=True, max_length=500, null=True)),
                ('default_model', models.CharField(blank=True, max_length=200, null=True)),
                ('policy', models.CharField(choices=[('choice', 'User chooses per request'), ('byollm_only', 'Always use the tenant model'), ('aegis_only', 'Always use the platform model')], default='choice', max_length=20)),
                ('last_tested_at', models.DateTimeField(blank=True, null=True)),
                ('last_test_result', models.CharField(blank=True, max_length=20, null=True)),
                ('last_test_latency', models.PositiveIntegerField(blank=True, help_text='Latency of the last connectivity test in milliseconds', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'llm_configurations',
            },
        ),
    ]
