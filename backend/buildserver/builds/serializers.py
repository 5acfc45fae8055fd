from rest_framework import serializers

from .models import FRAMEWORK_CHOICES, LEVEL_CHOICES, STATUS_CHOICES


class FileEntrySerializer(serializers.Serializer):
    path = serializers.CharField(max_length=1024)
    content = serializers.CharField(allow_blank=True, trim_whitespace=False)


class SubmitBuildSerializer(serializers.Serializer):
    project_id = serializers.CharField(max_length=255)
    project_name = serializers.CharField(max_length=255)
    framework = serializers.ChoiceField(choices=FRAMEWORK_CHOICES)
    files = FileEntrySerializer(many=True, allow_empty=False)
    build_config = serializers.DictField(required=False, default=dict)
    priority = serializers.IntegerField(required=False, default=0, min_value=-1000, max_value=1000)


class LogEntrySerializer(serializers.Serializer):
    timestamp = serializers.DateTimeField()
    level = serializers.ChoiceField(choices=LEVEL_CHOICES)
    message = serializers.CharField()


class BuildJobSerializer(serializers.Serializer):
    build_id = serializers.CharField()
    project_id = serializers.CharField()
    project_name = serializers.CharField()
    framework = serializers.ChoiceField(choices=FRAMEWORK_CHOICES)
    status = serializers.ChoiceField(choices=STATUS_CHOICES)
    progress = serializers.IntegerField()
    logs = LogEntrySerializer(many=True)
    artifact_url = serializers.CharField(allow_null=True)
    error_message = serializers.CharField(allow_null=True)
    priority = serializers.IntegerField()
    queue_position = serializers.IntegerField(allow_null=True)
    created_at = serializers.DateTimeField()
    started_at = serializers.DateTimeField(allow_null=True)
    completed_at = serializers.DateTimeField(allow_null=True)


class BuildSummarySerializer(BuildJobSerializer):
    """Build listing without the log body."""

    logs = None
