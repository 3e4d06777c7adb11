"""クラスタ上で管理するリソースの望ましい状態の定義。

所有ラベル（v1）はコンポーネントのリソースを発見・削除する唯一の手段であり、
外部ツールが参照する可能性があるため、キーと値を変更してはならない。

    app.kubernetes.io/managed-by = shiftdeploy
    app.kubernetes.io/name       = <component>
    app.kubernetes.io/component  = <component>
    app.kubernetes.io/part-of    = <group>
    app.kubernetes.io/instance   = <group>
    app.openshift.io/runtime     = dotnet
    shiftdeploy.io/label-schema  = v1
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from shiftdeploy.models.project import ContainerPort, ContainerResources, DeploymentStrategy, HttpGetProbe


class ResourceLabels:
    """所有ラベルのキー。"""

    MANAGED_BY = "app.kubernetes.io/managed-by"
    NAME = "app.kubernetes.io/name"
    COMPONENT = "app.kubernetes.io/component"
    PART_OF = "app.kubernetes.io/part-of"
    INSTANCE = "app.kubernetes.io/instance"
    RUNTIME = "app.openshift.io/runtime"
    SCHEMA = "shiftdeploy.io/label-schema"


class ResourceLabelValues:
    MANAGED_BY = "shiftdeploy"
    RUNTIME = "dotnet"
    SCHEMA = "v1"


class Annotations:
    VCS_URI = "app.openshift.io/vcs-uri"
    VCS_REF = "app.openshift.io/vcs-ref"
    DISPLAY_NAME = "openshift.io/display-name"
    PROVIDER_DISPLAY_NAME = "openshift.io/provider-display-name"


# Podセレクタ用のラベルキー
SELECTOR_LABEL = "app"

# Deployment内のアプリケーションコンテナ名
CONTAINER_NAME = "app"


class ResourceKind(StrEnum):
    """shiftdeployが扱うリソース種別。"""

    IMAGE_STREAM = "ImageStream"
    BUILD_CONFIG = "BuildConfig"
    BUILD = "Build"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    ROUTE = "Route"
    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"


API_VERSIONS: dict[ResourceKind, str] = {
    ResourceKind.IMAGE_STREAM: "image.openshift.io/v1",
    ResourceKind.BUILD_CONFIG: "build.openshift.io/v1",
    ResourceKind.BUILD: "build.openshift.io/v1",
    ResourceKind.DEPLOYMENT: "apps/v1",
    ResourceKind.SERVICE: "v1",
    ResourceKind.ROUTE: "route.openshift.io/v1",
    ResourceKind.SECRET: "v1",
    ResourceKind.CONFIG_MAP: "v1",
    ResourceKind.PERSISTENT_VOLUME_CLAIM: "v1",
}


def component_labels(name: str, part_of: str) -> dict[str, str]:
    """コンポーネントの所有ラベルを返す。"""
    return {
        ResourceLabels.MANAGED_BY: ResourceLabelValues.MANAGED_BY,
        ResourceLabels.PART_OF: part_of,
        ResourceLabels.INSTANCE: part_of,
        ResourceLabels.NAME: name,
        ResourceLabels.COMPONENT: name,
        ResourceLabels.SCHEMA: ResourceLabelValues.SCHEMA,
    }


def runtime_labels() -> dict[str, str]:
    return {ResourceLabels.RUNTIME: ResourceLabelValues.RUNTIME}


def selector_labels(name: str) -> dict[str, str]:
    return {SELECTOR_LABEL: name}


def ownership_selector(name: str) -> dict[str, str]:
    """コンポーネントのリソースを列挙するためのラベル条件。"""
    return {
        ResourceLabels.MANAGED_BY: ResourceLabelValues.MANAGED_BY,
        ResourceLabels.NAME: name,
    }


def managed_selector() -> dict[str, str]:
    """shiftdeployが管理する全コンポーネントのリソースを列挙するためのラベル条件。"""
    return {
        ResourceLabels.MANAGED_BY: ResourceLabelValues.MANAGED_BY,
        ResourceLabels.SCHEMA: ResourceLabelValues.SCHEMA,
    }


def format_label_selector(labels: dict[str, str]) -> str:
    """ラベル辞書を "k=v,k=v" 形式のセレクタ文字列にする。"""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def port_name(port: ContainerPort) -> str:
    """ポート名。未指定の場合は "<protocol>-<port>" を使う。"""
    return port.name or f"{port.protocol}-{port.port}"


class _ResourceSpecBase(BaseModel):
    """全リソース種別に共通の項目。"""

    name: str
    namespace: str
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    # 既存リソースを更新する場合に、既存側が持っていなければならないラベル
    owner_labels: dict[str, str] = Field(default_factory=dict)
    # 直前に観測した既存オブジェクト。Noneの場合は適用時に読み込む
    live: dict[str, Any] | None = None

    @property
    def resource_kind(self) -> ResourceKind:
        return ResourceKind(getattr(self, "kind"))

    def _metadata(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return metadata

    def _body(self) -> dict[str, Any]:
        return {}

    def manifest(self) -> dict[str, Any]:
        """クラスタに送信するマニフェストを返す。"""
        kind = self.resource_kind
        return {
            "apiVersion": API_VERSIONS[kind],
            "kind": kind.value,
            "metadata": self._metadata(),
            **self._body(),
        }


class ImageStreamTagSpec(BaseModel):
    """ImageStreamのタグ定義（外部イメージの取り込み）。"""

    name: str
    from_image: str
    display_name: str | None = None


class ImageStreamSpec(_ResourceSpecBase):
    kind: Literal["ImageStream"] = "ImageStream"
    tags: list[ImageStreamTagSpec] = Field(default_factory=list)
    lookup_local: bool = False

    def _body(self) -> dict[str, Any]:
        spec: dict[str, Any] = {}
        if self.lookup_local:
            spec["lookupPolicy"] = {"local": True}
        if self.tags:
            spec["tags"] = [
                {
                    "name": tag.name,
                    **({"annotations": {Annotations.DISPLAY_NAME: tag.display_name}} if tag.display_name else {}),
                    "from": {"kind": "DockerImage", "name": tag.from_image},
                    "referencePolicy": {"type": "Local"},
                    # ビルダーイメージの更新を定期的に取り込む
                    "importPolicy": {"scheduled": True},
                }
                for tag in self.tags
            ]
        return {"spec": spec} if spec else {}


class BuildConfigSpec(_ResourceSpecBase):
    kind: Literal["BuildConfig"] = "BuildConfig"
    output_image_stream_tag: str
    builder_image_stream_tag: str
    history_limit: int = 5
    source_secret: str | None = None

    def _body(self) -> dict[str, Any]:
        source: dict[str, Any] = {"type": "Binary"}
        if self.source_secret:
            source["sourceSecret"] = {"name": self.source_secret}
        return {
            "spec": {
                "failedBuildsHistoryLimit": self.history_limit,
                "successfulBuildsHistoryLimit": self.history_limit,
                "output": {"to": {"kind": "ImageStreamTag", "name": self.output_image_stream_tag}},
                "source": source,
                "strategy": {
                    "type": "Source",
                    "sourceStrategy": {"from": {"kind": "ImageStreamTag", "name": self.builder_image_stream_tag}},
                },
            }
        }


def _probe(probe: HttpGetProbe) -> dict[str, Any]:
    body: dict[str, Any] = {"httpGet": {"path": probe.path, "port": probe.port}}
    if probe.initial_delay is not None:
        body["initialDelaySeconds"] = probe.initial_delay
    if probe.period is not None:
        body["periodSeconds"] = probe.period
    if probe.timeout is not None:
        body["timeoutSeconds"] = probe.timeout
    if probe.failure_threshold is not None:
        body["failureThreshold"] = probe.failure_threshold
    return body


class VolumeSpec(BaseModel):
    """Deploymentにマウントするボリューム。ボリューム名は参照先のリソース名と同じ。"""

    name: str
    source: Literal["configMap", "persistentVolumeClaim"]
    mount_path: str
    read_only: bool = False

    def volume(self) -> dict[str, Any]:
        if self.source == "configMap":
            return {"name": self.name, "configMap": {"name": self.name}}
        return {"name": self.name, "persistentVolumeClaim": {"claimName": self.name}}

    def mount(self) -> dict[str, Any]:
        mount: dict[str, Any] = {"name": self.name, "mountPath": self.mount_path}
        # APIサーバーはreadOnly: falseを返さない
        if self.read_only:
            mount["readOnly"] = True
        return mount


class DeploymentSpec(_ResourceSpecBase):
    kind: Literal["Deployment"] = "Deployment"
    replicas: int = 1
    selector: dict[str, str]
    # Noneの場合は既存コンテナのimageを保持する
    image: str | None = None
    ports: list[ContainerPort] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    resources: ContainerResources = Field(default_factory=ContainerResources)
    strategy: DeploymentStrategy | None = None
    liveness_probe: HttpGetProbe | None = None
    readiness_probe: HttpGetProbe | None = None
    startup_probe: HttpGetProbe | None = None
    volumes: list[VolumeSpec] = Field(default_factory=list)

    def container(self) -> dict[str, Any]:
        container: dict[str, Any] = {"name": CONTAINER_NAME}
        if self.image is not None:
            container["image"] = self.image
        container["securityContext"] = {"privileged": False}
        if self.ports:
            container["ports"] = [
                {"name": port_name(p), "containerPort": p.port, "protocol": p.protocol.upper()} for p in self.ports
            ]
        if self.environment:
            container["env"] = [{"name": key, "value": value} for key, value in sorted(self.environment.items())]
        resources: dict[str, Any] = {}
        if self.resources.requests:
            resources["requests"] = dict(self.resources.requests)
        if self.resources.limits:
            resources["limits"] = dict(self.resources.limits)
        if resources:
            container["resources"] = resources
        if self.liveness_probe:
            container["livenessProbe"] = _probe(self.liveness_probe)
        if self.readiness_probe:
            container["readinessProbe"] = _probe(self.readiness_probe)
        if self.startup_probe:
            container["startupProbe"] = _probe(self.startup_probe)
        if self.volumes:
            container["volumeMounts"] = [v.mount() for v in self.volumes]
        return container

    def _body(self) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "replicas": self.replicas,
            "selector": {"matchLabels": dict(self.selector)},
            "template": {
                "metadata": {"labels": dict(self.selector)},
                "spec": {"containers": [self.container()]},
            },
        }
        if self.volumes:
            spec["template"]["spec"]["volumes"] = [v.volume() for v in self.volumes]
        if self.strategy == "Recreate":
            # RollingUpdateから切り替える場合、既存のrollingUpdateパラメータは削除しなければならない
            spec["strategy"] = {"type": self.strategy, "rollingUpdate": None}
        elif self.strategy:
            spec["strategy"] = {"type": self.strategy}
        return {"spec": spec}


class ServiceSpec(_ResourceSpecBase):
    kind: Literal["Service"] = "Service"
    selector: dict[str, str]
    ports: list[ContainerPort]

    def _body(self) -> dict[str, Any]:
        return {
            "spec": {
                "type": "ClusterIP",
                "selector": dict(self.selector),
                "ports": [
                    {"name": port_name(p), "port": p.port, "targetPort": p.port, "protocol": p.protocol.upper()}
                    for p in self.ports
                ],
            }
        }


class RouteSpec(_ResourceSpecBase):
    kind: Literal["Route"] = "Route"
    service_name: str
    target_port: str

    def _body(self) -> dict[str, Any]:
        return {
            "spec": {
                "to": {"kind": "Service", "name": self.service_name},
                "port": {"targetPort": self.target_port},
            }
        }


class ConfigMapSpec(_ResourceSpecBase):
    kind: Literal["ConfigMap"] = "ConfigMap"
    # 作成時のみ指定する。既存のConfigMapの内容は変更しない
    data: dict[str, str] | None = None

    def _body(self) -> dict[str, Any]:
        return {"data": dict(self.data)} if self.data else {}


class PersistentVolumeClaimSpec(_ResourceSpecBase):
    kind: Literal["PersistentVolumeClaim"] = "PersistentVolumeClaim"
    size: str
    limit: str | None = None
    storage_class: str | None = None
    access: str = "ReadWriteOnce"

    def _body(self) -> dict[str, Any]:
        resources: dict[str, Any] = {"requests": {"storage": self.size}}
        if self.limit:
            resources["limits"] = {"storage": self.limit}
        spec: dict[str, Any] = {"accessModes": [self.access], "resources": resources}
        if self.storage_class:
            spec["storageClassName"] = self.storage_class
        return {"spec": spec}


class SecretReferenceSpec(_ResourceSpecBase):
    """ユーザーが管理するSecretへの参照。存在確認のみ行い、変更しない。"""

    kind: Literal["Secret"] = "Secret"


ResourceSpec = Annotated[
    ImageStreamSpec
    | BuildConfigSpec
    | DeploymentSpec
    | ServiceSpec
    | RouteSpec
    | SecretReferenceSpec
    | ConfigMapSpec
    | PersistentVolumeClaimSpec,
    Field(discriminator="kind"),
]


def container_image(deployment: dict[str, Any] | None) -> str | None:
    """Deploymentのアプリケーションコンテナのimageを返す。"""
    if deployment is None:
        return None
    template = (deployment.get("spec") or {}).get("template") or {}
    containers = (template.get("spec") or {}).get("containers") or []
    for container in containers:
        if container.get("name") == CONTAINER_NAME:
            return container.get("image")
    return None


def route_url(route: dict[str, Any]) -> str | None:
    """Routeオブジェクトから公開URLを返す。ホスト未割り当ての場合はNone。"""
    host = route_host(route)
    if not host:
        return None
    scheme = "https" if (route.get("spec") or {}).get("tls") else "http"
    return f"{scheme}://{host}"


def route_host(route: dict[str, Any]) -> str | None:
    """プラットフォームが割り当てたホスト名を返す。"""
    for ingress in (route.get("status") or {}).get("ingress") or []:
        host = ingress.get("host")
        if host:
            return str(host)
    host = (route.get("spec") or {}).get("host")
    return str(host) if host else None
