import json
import queue

from django.http import FileResponse, JsonResponse, StreamingHttpResponse
from django.utils import timezone
from rest_framework import renderers, status, viewsets
from rest_framework.decorators import action, api_view
from rest_framework.response import Response
from rest_framework.utils.encoders import JSONEncoder

from .apps import get_build_service
from .exceptions import ArtifactNotReady, BuildNotFound, BuildServerError, InvalidStateError, ValidationError
from .serializers import BuildJobSerializer, BuildSummarySerializer, LogEntrySerializer, SubmitBuildSerializer
from .storage import slugify

HEARTBEAT_SECONDS = 15
APK_CONTENT_TYPE = "application/vnd.android.package-archive"

ERROR_STATUS = [
    (BuildNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (ArtifactNotReady, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
]


def error_response(exc):
    for error_class, code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return Response({"detail": str(exc)}, status=code)
    return Response({"detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


def build_message_payload(message):
    return {
        "type": message["type"],
        "projectId": message["projectId"],
        "buildId": message["buildId"],
        "build": BuildJobSerializer(message["build"]).data,
    }


def format_event(payload, event=None):
    data = json.dumps(payload, cls=JSONEncoder)
    if event:
        return f"event: {event}\ndata: {data}\n\n"
    return f"data: {data}\n\n"


def stream_build_events(service, build_id, snapshot, messages, heartbeat=HEARTBEAT_SECONDS):
    """Yield SSE frames for one build until it is terminal or the client goes away."""
    try:
        yield format_event(
            build_message_payload(
                {"type": "build_update", "projectId": snapshot.project_id, "buildId": build_id, "build": snapshot}
            ),
            event="build_update",
        )
        if snapshot.is_terminal:
            return
        while True:
            try:
                message = messages.get(timeout=heartbeat)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            yield format_event(build_message_payload(message), event="build_update")
            if message["build"].is_terminal:
                return
    finally:
        service.unsubscribe(build_id, messages.put)


class EventStreamRenderer(renderers.BaseRenderer):
    media_type = "text/event-stream"
    format = "sse"
    charset = "utf-8"

    def render(self, data, accepted_media_type=None, renderer_context=None):
        return format_event(data, event="error").encode(self.charset)


def current_service(override=None):
    return override if override is not None else get_build_service()


class BuildViewSet(viewsets.ViewSet):
    service = None

    def get_service(self):
        return current_service(self.service)

    # ---- List recent builds ----
    def list(self, request):
        try:
            limit = min(int(request.query_params.get("limit", 100)), 100)
        except ValueError:
            return Response({"detail": "limit must be an integer"}, status=status.HTTP_400_BAD_REQUEST)
        builds = self.get_service().list_builds(limit=max(limit, 1))
        return Response(BuildSummarySerializer(builds, many=True).data)

    # ---- Submit ----
    def create(self, request):
        serializer = SubmitBuildSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"detail": "Invalid request", "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data
        service = self.get_service()
        try:
            build_id = service.submit(
                project_id=data["project_id"],
                project_name=data["project_name"],
                framework=data["framework"],
                files=data["files"],
                build_config=data.get("build_config") or {},
                priority=data.get("priority", 0),
            )
            build = service.get_status(build_id)
        except BuildServerError as e:
            return error_response(e)
        return Response(BuildJobSerializer(build).data, status=status.HTTP_201_CREATED)

    # ---- Check status ----
    def retrieve(self, request, pk=None):
        try:
            build = self.get_service().get_status(pk)
        except BuildServerError as e:
            return error_response(e)
        return Response(BuildJobSerializer(build).data)

    # ---- Fetch logs ----
    @action(detail=True, methods=["get"])
    def logs(self, request, pk=None):
        try:
            build = self.get_service().get_status(pk)
        except BuildServerError as e:
            return error_response(e)
        entries = build.logs
        last = request.query_params.get("last")
        if last:
            try:
                entries = entries[-int(last):] if int(last) > 0 else []
            except ValueError:
                return Response({"detail": "last must be an integer"}, status=status.HTTP_400_BAD_REQUEST)
        return Response({"build_id": build.build_id, "logs": LogEntrySerializer(entries, many=True).data})

    # ---- Cancel ----
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        try:
            build = self.get_service().cancel(pk)
        except BuildServerError as e:
            return error_response(e)
        return Response({"detail": "Build cancelled", "build": BuildJobSerializer(build).data})

    # ---- Download signed APK ----
    @action(detail=True, methods=["get"])
    def download(self, request, pk=None):
        try:
            build, path = self.get_service().get_artifact(pk)
        except BuildServerError as e:
            return error_response(e)
        return FileResponse(
            open(path, "rb"),
            as_attachment=True,
            filename=f"{slugify(build.project_name)}.apk",
            content_type=APK_CONTENT_TYPE,
        )

    # ---- Live updates (Server-Sent Events) ----
    @action(detail=True, methods=["get"], renderer_classes=[EventStreamRenderer, renderers.JSONRenderer])
    def events(self, request, pk=None):
        service = self.get_service()
        messages = queue.Queue()
        try:
            snapshot = service.subscribe(pk, messages.put)
        except BuildServerError as e:
            return error_response(e)
        response = StreamingHttpResponse(
            stream_build_events(service, pk, snapshot, messages),
            content_type="text/event-stream",
        )
        response["Cache-Control"] = "no-cache"
        response["X-Accel-Buffering"] = "no"
        return response


@api_view(["GET"])
def queue_status(request):
    return Response(current_service(BuildViewSet.service).queue_snapshot())


def health(request):
    return JsonResponse({
        "status": "ok",
        "timestamp": timezone.now().isoformat(),
        "service": "build-server",
    })
