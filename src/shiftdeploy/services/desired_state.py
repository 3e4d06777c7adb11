"""プロジェクト情報から望ましいリソース状態を組み立てる。

ここでの処理はクラスタへの呼び出しを一切行わない純粋な関数で構成する。
検証エラーはすべて ValidationError として報告し、何も変更しない。
"""

import re
from typing import Any

from kubernetes.utils import parse_quantity
from pydantic import BaseModel, Field

from shiftdeploy.models.errors import InternalConsistencyError, ValidationError
from shiftdeploy.models.project import ContainerPort, GitRepoInfo, PersistentStorage, ProjectInfo
from shiftdeploy.models.resources import (
    Annotations,
    BuildConfigSpec,
    ConfigMapSpec,
    DeploymentSpec,
    ImageStreamSpec,
    ImageStreamTagSpec,
    PersistentVolumeClaimSpec,
    ResourceLabels,
    ResourceLabelValues,
    ResourceSpec,
    RouteSpec,
    SecretReferenceSpec,
    ServiceSpec,
    VolumeSpec,
    component_labels,
    ownership_selector,
    port_name,
    runtime_labels,
    selector_labels,
)
from shiftdeploy.models.state import DeployRequest

# RFC 1123 DNSラベル
_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_MAX_NAME_LENGTH = 63
_BINARY_BUILD_CONFIG_SUFFIX = "-binary"

# ランタイムのビルダーイメージを保持する共有ImageStream
RUNTIME_IMAGE_STREAM = "dotnet"


class RuntimeImage(BaseModel):
    """ランタイムバージョンに対応するS2Iビルダーイメージ。"""

    version: str
    builder_image: str
    # Webフレームワークの待ち受けアドレスを指定する環境変数
    binding_variables: tuple[str, ...] = ("ASPNETCORE_URLS", "ASPNETCORE_HTTP_PORTS", "DOTNET_URLS")
    default_binding: dict[str, str] = Field(default_factory=lambda: {"ASPNETCORE_URLS": "http://*:8080"})


def _dotnet_image(version: str, ubi: str) -> RuntimeImage:
    return RuntimeImage(
        version=version,
        builder_image=f"registry.access.redhat.com/{ubi}/dotnet-{version.replace('.', '')}:latest",
    )


RUNTIME_IMAGES: dict[str, RuntimeImage] = {
    "6.0": _dotnet_image("6.0", "ubi8"),
    "7.0": _dotnet_image("7.0", "ubi8"),
    "8.0": _dotnet_image("8.0", "ubi8"),
    "9.0": _dotnet_image("9.0", "ubi9"),
}


class LiveState(BaseModel):
    """前回のデプロイで適用済みのリソース（初回デプロイでは空）。"""

    deployment: dict[str, Any] | None = None
    service: dict[str, Any] | None = None
    route: dict[str, Any] | None = None
    # リソース名 → 既存オブジェクト
    config_maps: dict[str, dict[str, Any]] = Field(default_factory=dict)
    volume_claims: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Component(BaseModel):
    """デプロイ単位となるコンポーネント。"""

    name: str
    part_of: str
    namespace: str

    @property
    def build_config_name(self) -> str:
        return f"{self.name}{_BINARY_BUILD_CONFIG_SUFFIX}"

    @property
    def image_stream_tag(self) -> str:
        return f"{self.name}:latest"


class DesiredState(BaseModel):
    """適用順に並んだ望ましいリソースの集合。"""

    component: Component
    runtime: RuntimeImage
    specs: list[ResourceSpec]
    exposed_port: ContainerPort | None = None

    def _find(self, kind: str) -> Any:
        for spec in self.specs:
            if spec.kind == kind and spec.name == self.component.name:
                return spec
        return None

    @property
    def deployment(self) -> DeploymentSpec:
        spec = self._find("Deployment")
        if spec is None:
            raise InternalConsistencyError(f"The desired state of '{self.component.name}' has no deployment")
        return spec  # type: ignore[no-any-return]

    @property
    def service(self) -> ServiceSpec | None:
        return self._find("Service")  # type: ignore[no-any-return]

    @property
    def route(self) -> RouteSpec | None:
        return self._find("Route")  # type: ignore[no-any-return]

    @property
    def build_config(self) -> BuildConfigSpec:
        for spec in self.specs:
            if isinstance(spec, BuildConfigSpec):
                return spec
        raise InternalConsistencyError(f"The desired state of '{self.component.name}' has no build config")

    def pre_deployment_specs(self) -> list[ResourceSpec]:
        """Deploymentより前に適用するリソース（Routeは公開ステージで適用する）。"""
        return [s for s in self.specs if s.kind not in ("Deployment", "Route")]


def default_name(assembly_name: str) -> str:
    """アセンブリ名からコンポーネント名を導出する。"""
    return assembly_name.replace(".", "-").replace("_", "-").lower()


def normalize_runtime_version(version: str) -> str:
    """"net8.0" のようなターゲットフレームワーク表記を "8.0" にする。"""
    normalized = version.strip().lower()
    if normalized.startswith("net"):
        normalized = normalized[3:]
    return normalized


def resolve_runtime(version: str) -> RuntimeImage:
    """ランタイムバージョンからビルダーイメージを決定する。

    Raises:
        ValidationError: 未対応のバージョンの場合。
    """
    runtime = RUNTIME_IMAGES.get(normalize_runtime_version(version))
    if runtime is None:
        supported = ", ".join(sorted(RUNTIME_IMAGES))
        raise ValidationError(f"Unsupported runtime version '{version}'. Supported versions: {supported}.")
    return runtime


def validate_name(name: str) -> None:
    errors: list[str] = []
    if not _NAME_RE.match(name):
        errors.append(
            f"Invalid name '{name}': must consist of lower case alphanumeric characters or '-', "
            "and must start and end with an alphanumeric character."
        )
    if len(name) + len(_BINARY_BUILD_CONFIG_SUFFIX) > _MAX_NAME_LENGTH:
        limit = _MAX_NAME_LENGTH - len(_BINARY_BUILD_CONFIG_SUFFIX)
        errors.append(f"Invalid name '{name}': must be at most {limit} characters.")
    if errors:
        raise ValidationError(errors[0], errors)


def mount_resource_name(component: str, mount: str) -> str:
    """ConfigMap・PersistentVolumeClaimのリソース名。"""
    return f"{component}-{mount}"


def _valid_quantity(value: str) -> bool:
    try:
        parse_quantity(value)
    except ValueError:
        return False
    return True


def validate_mounts(name: str, project: ProjectInfo) -> None:
    """ConfigMap・ストレージの名前・マウント先・容量を検証する。"""
    errors: list[str] = []
    names: set[str] = set()
    paths: set[str] = set()
    for mount in [*project.config_maps, *project.volume_claims]:
        resource = mount_resource_name(name, mount.name)
        if not _NAME_RE.match(resource) or len(resource) > _MAX_NAME_LENGTH:
            errors.append(f"Invalid volume name '{mount.name}': '{resource}' is not a valid resource name.")
        if mount.name in names:
            errors.append(f"The volume name '{mount.name}' is used more than once.")
        if mount.path in paths:
            errors.append(f"The mount path '{mount.path}' is used more than once.")
        names.add(mount.name)
        paths.add(mount.path)
    for storage in project.volume_claims:
        for quantity in (storage.size, storage.limit):
            if quantity is not None and not _valid_quantity(quantity):
                errors.append(f"Invalid storage size '{quantity}' for '{storage.name}'.")
    if errors:
        raise ValidationError(errors[0], errors)


def claim_size(storage: PersistentStorage, live: dict[str, Any] | None) -> str:
    """要求する容量。既存のクレームより小さくはしない（縮小できないため）。"""
    if live is None:
        return storage.size
    current = (((live.get("spec") or {}).get("resources") or {}).get("requests") or {}).get("storage")
    if current is None or not _valid_quantity(str(current)):
        return storage.size
    if parse_quantity(str(current)) > parse_quantity(storage.size):
        return str(current)
    return storage.size


def exposed_port(project: ProjectInfo) -> ContainerPort:
    """公開対象のポートを返す。サービスポートがちょうど1つでなければ検証エラー。"""
    service_ports = project.service_ports
    if not service_ports:
        raise ValidationError("The project has no service port. Exposing the application requires a service port.")
    if len(service_ports) > 1:
        raise ValidationError("The project has multiple service ports. It's not clear what port to expose.")
    return service_ports[0]


def resolve_part_of(part_of: str | None, name: str, live: LiveState) -> str:
    """part-ofが未指定の場合は既存Deploymentのラベル、なければコンポーネント名を使う。"""
    if part_of:
        return part_of
    if live.deployment is not None:
        labels = (live.deployment.get("metadata") or {}).get("labels") or {}
        if labels.get(ResourceLabels.PART_OF):
            return str(labels[ResourceLabels.PART_OF])
    return name


def validate_request(request: DeployRequest) -> tuple[str, RuntimeImage]:
    """クラスタ呼び出し前のローカル検証。コンポーネント名とランタイムを返す。

    Raises:
        ValidationError: 名前・ランタイム・公開設定のいずれかが不正な場合。
    """
    name = request.name or default_name(request.project.assembly_name)
    validate_name(name)
    if request.part_of is not None:
        validate_name(request.part_of)
    validate_mounts(name, request.project)
    runtime = resolve_runtime(request.project.runtime_version)
    if request.expose:
        exposed_port(request.project)
    return name, runtime


def validate_live_state(request: DeployRequest, live: LiveState) -> None:
    """既存リソースを踏まえた検証。

    Raises:
        ValidationError: 初回デプロイでビルドを省略した場合、または既存ルートを公開できない場合。
    """
    if not request.build and live.deployment is None:
        raise ValidationError("The build can not be skipped on the first deployment.")
    if live.route is not None:
        exposed_port(request.project)


def container_environment(project: ProjectInfo, runtime: RuntimeImage) -> dict[str, str]:
    """コンテナの環境変数。待ち受けアドレスが未指定なら既定値を補う。"""
    environment = dict(project.environment)
    if not any(var in environment for var in runtime.binding_variables):
        for key, value in runtime.default_binding.items():
            environment.setdefault(key, value)
    return environment


def _deployment_annotations(git: GitRepoInfo | None) -> dict[str, str]:
    if git is None:
        return {}
    return {Annotations.VCS_URI: git.remote_url, Annotations.VCS_REF: git.remote_branch}


def _live_replicas(deployment: dict[str, Any] | None) -> int:
    if deployment is None:
        return 1
    replicas = (deployment.get("spec") or {}).get("replicas")
    return 1 if replicas is None else int(replicas)


def build_desired_state(request: DeployRequest, namespace: str, live: LiveState | None = None) -> DesiredState:
    """望ましいリソース状態を組み立てる。

    Args:
        request: デプロイの入力（プロジェクト情報・フラグ・Git情報）。
        namespace: 対象の名前空間。
        live: 前回適用済みのリソース。初回デプロイではNone。

    Returns:
        適用順に並んだResourceSpecを持つDesiredState。

    Raises:
        ValidationError: 入力が不正な場合。
    """
    live = live or LiveState()
    name, runtime = validate_request(request)
    validate_live_state(request, live)
    project = request.project
    component = Component(name=name, part_of=resolve_part_of(request.part_of, name, live), namespace=namespace)

    labels = component_labels(component.name, component.part_of)
    owner = ownership_selector(component.name)
    selector = selector_labels(component.name)

    specs: list[ResourceSpec] = [
        ImageStreamSpec(
            name=RUNTIME_IMAGE_STREAM,
            namespace=namespace,
            labels={ResourceLabels.MANAGED_BY: ResourceLabelValues.MANAGED_BY, **runtime_labels()},
            annotations={Annotations.DISPLAY_NAME: ".NET", Annotations.PROVIDER_DISPLAY_NAME: "Red Hat"},
            owner_labels={ResourceLabels.MANAGED_BY: ResourceLabelValues.MANAGED_BY},
            tags=[
                ImageStreamTagSpec(
                    name=runtime.version,
                    from_image=runtime.builder_image,
                    display_name=f".NET {runtime.version}",
                )
            ],
        ),
        ImageStreamSpec(
            name=component.name,
            namespace=namespace,
            labels={**labels, **runtime_labels()},
            owner_labels=owner,
            lookup_local=True,
        ),
    ]

    if project.source_secret:
        specs.append(SecretReferenceSpec(name=project.source_secret, namespace=namespace))

    specs.append(
        BuildConfigSpec(
            name=component.build_config_name,
            namespace=namespace,
            labels={**labels, **runtime_labels()},
            owner_labels=owner,
            output_image_stream_tag=component.image_stream_tag,
            builder_image_stream_tag=f"{RUNTIME_IMAGE_STREAM}:{runtime.version}",
            source_secret=project.source_secret,
        )
    )

    volumes: list[VolumeSpec] = []
    for storage in project.volume_claims:
        resource = mount_resource_name(component.name, storage.name)
        live_claim = live.volume_claims.get(resource)
        specs.append(
            PersistentVolumeClaimSpec(
                name=resource,
                namespace=namespace,
                labels=labels,
                owner_labels=owner,
                live=live_claim,
                size=claim_size(storage, live_claim),
                limit=storage.limit,
                storage_class=storage.storage_class,
                access=storage.access,
            )
        )
        volumes.append(
            VolumeSpec(
                name=resource, source="persistentVolumeClaim", mount_path=storage.path, read_only=storage.read_only
            )
        )
    for config_map in project.config_maps:
        resource = mount_resource_name(component.name, config_map.name)
        live_map = live.config_maps.get(resource)
        specs.append(
            ConfigMapSpec(
                name=resource,
                namespace=namespace,
                labels=labels,
                owner_labels=owner,
                live=live_map,
                data=dict(config_map.data) if live_map is None else None,
            )
        )
        volumes.append(
            VolumeSpec(
                name=resource, source="configMap", mount_path=config_map.path, read_only=config_map.read_only
            )
        )

    service_ports = project.service_ports
    if service_ports:
        specs.append(
            ServiceSpec(
                name=component.name,
                namespace=namespace,
                labels=labels,
                owner_labels=owner,
                selector=selector,
                ports=service_ports,
                live=live.service,
            )
        )

    specs.append(
        DeploymentSpec(
            name=component.name,
            namespace=namespace,
            labels={**labels, **runtime_labels()},
            annotations=_deployment_annotations(request.git),
            owner_labels=owner,
            live=live.deployment,
            replicas=_live_replicas(live.deployment),
            selector=selector,
            # 再デプロイ時は既存のimageを保持し、ビルド成功後にのみ更新する
            image=None if live.deployment is not None else component.image_stream_tag,
            ports=project.ports,
            environment=container_environment(project, runtime),
            resources=project.resources,
            strategy=project.strategy,
            liveness_probe=project.liveness_probe,
            readiness_probe=project.readiness_probe,
            startup_probe=project.startup_probe,
            volumes=volumes,
        )
    )

    port: ContainerPort | None = None
    if request.expose or live.route is not None:
        port = exposed_port(project)
        specs.append(
            RouteSpec(
                name=component.name,
                namespace=namespace,
                labels=labels,
                owner_labels=owner,
                live=live.route,
                service_name=component.name,
                target_port=port_name(port),
            )
        )

    return DesiredState(component=component, runtime=runtime, specs=specs, exposed_port=port)
