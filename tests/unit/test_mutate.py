"""
Unit tests for pod mutation.
"""

import copy
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from cfs_controller.config import (
    CLEAN_CACHE_ANNOTATION,
    DELETE_DELAY_ANNOTATION,
    INJECT_SIDECAR_DONE,
    RUNTIME_ANNOTATION,
    ControllerConfig,
)
from cfs_controller.exceptions import (
    CapacityTooSmall,
    InvalidArgument,
    ResourceAlreadyExists,
    ResourceNotFound,
    SignerMismatch,
    UnsupportedRuntimeClass,
)
from cfs_controller.webhook.mutate import INIT_CONTAINER_NAME, SidecarMutator, capacity_gib, volume_settings_input
from cfs_controller.webhook.sidecar import CONF_DIR, CONTAINER_NAME
from cfs_controller.webhook.volumes import FilesystemInfo, PVPair

from conftest import make_descriptor, make_pod, make_pv, make_pvc


def make_pair(
    volume="data",
    claim="data",
    pv_name="pv-1",
    owner="0xabc",
    runtime="vm",
    storage="10Gi",
    fs="fs-demo",
    attributes=None,
):
    return PVPair(
        pv=make_pv(pv_name, claim=("default", claim), attributes=attributes),
        pvc=make_pvc(name=claim, storage=storage, volume_name=pv_name),
        volume_name=volume,
        filesystem=FilesystemInfo.from_descriptor(make_descriptor(name=fs, owner=owner, runtime=runtime)),
    )


@pytest.fixture
def mutator(config, mock_kube):
    return SidecarMutator(config, mock_kube)


def _names(items):
    return [item["name"] for item in items]


class TestMutate:
    """Tests for SidecarMutator.mutate."""

    @pytest.mark.unit
    def test_single_volume(self, mutator, config):
        pod = make_pod()
        original = copy.deepcopy(pod)

        out = mutator.mutate(pod, [make_pair()])

        assert pod == original
        spec = out["spec"]
        sidecar = spec["containers"][0]
        assert _names(spec["containers"]) == [CONTAINER_NAME, "app"]
        assert _names(spec["initContainers"]) == [INIT_CONTAINER_NAME]
        assert out["metadata"]["labels"][INJECT_SIDECAR_DONE] == "true"
        assert spec["runtimeClassName"] == "kata-qemu"
        assert out["metadata"]["annotations"][RUNTIME_ANNOTATION] == "vm"

        volumes = {v["name"]: v for v in spec["volumes"]}
        assert volumes["data"] == {"name": "data", "emptyDir": {}}
        app_mount = spec["containers"][1]["volumeMounts"][0]
        assert app_mount["mountPropagation"] == "HostToContainer"

        pair_mount = [m for m in sidecar["volumeMounts"] if m["name"] == "data"][0]
        assert pair_mount["mountPropagation"] == "Bidirectional"
        assert pair_mount["mountPath"].startswith(config.pod_mount_base + "/")

        metaurl = [e["value"] for e in sidecar["env"] if e["name"] == "metaurl"][0]
        assert metaurl.startswith("rediss://10.0.0.7:6379/1?")
        assert metaurl.endswith("tls-server-name=fs-demo")

    @pytest.mark.unit
    def test_init_container(self, mutator, config):
        out = mutator.mutate(make_pod(), [make_pair()])

        init = out["spec"]["initContainers"][0]
        env = {e["name"]: e["value"] for e in init["env"]}
        assert init["image"] == config.init_image
        assert env["SIGNER"] == "0xabc"
        assert env["SIDECAR_CONTAINER_NAMES"] == CONTAINER_NAME
        assert env["FILESYSTEM_NAMES"] == "fs-demo"
        assert env["WORKLOAD_IMAGES"] == "nginx:1.25"
        assert env["RUNTIME_CLASS"] == "kata-qemu"
        assert env["AUTH_EXPIRE_IN_SECONDS"] == str(config.resource_auth_expire_in)
        assert init["volumeMounts"] == [{"name": "cfs-conf", "mountPath": CONF_DIR}]

    @pytest.mark.unit
    def test_signer_mismatch(self, mutator, mock_kube):
        pod = make_pod(claims=(("a", "claim-a"), ("b", "claim-b")))
        pairs = [
            make_pair("a", "claim-a", "pv-a", owner="0xabc"),
            make_pair("b", "claim-b", "pv-b", owner="0xdef"),
        ]
        with pytest.raises(SignerMismatch, match="0xabc, 0xdef"):
            mutator.mutate(pod, pairs)
        mock_kube.create_secret.assert_not_called()
        mock_kube.replace_secret.assert_not_called()

    @pytest.mark.unit
    def test_capacity_floor(self, mutator):
        with pytest.raises(CapacityTooSmall, match="at least 1GiB"):
            mutator.mutate(make_pod(), [make_pair(storage="512Mi")])

    @pytest.mark.unit
    def test_small_second_claim_writes_no_secret(self, mutator, mock_kube):
        pod = make_pod(claims=(("a", "claim-a"), ("b", "claim-b")))
        pairs = [
            make_pair("a", "claim-a", "pv-a", storage="10Gi"),
            make_pair("b", "claim-b", "pv-b", storage="100Mi"),
        ]

        with pytest.raises(CapacityTooSmall):
            mutator.mutate(pod, pairs)

        mock_kube.get_secret.assert_not_called()
        mock_kube.create_secret.assert_not_called()
        mock_kube.replace_secret.assert_not_called()

    @pytest.mark.unit
    def test_bad_settings_on_second_claim_writes_no_secret(self, mutator, mock_kube):
        pod = make_pod(claims=(("a", "claim-a"), ("b", "claim-b")))
        pairs = [
            make_pair("a", "claim-a", "pv-a"),
            make_pair("b", "claim-b", "pv-b", attributes={"cfs/mount-labels": "- not\n- a map"}),
        ]

        with pytest.raises(InvalidArgument, match="expected a mapping"):
            mutator.mutate(pod, pairs)

        mock_kube.create_secret.assert_not_called()
        mock_kube.replace_secret.assert_not_called()

    @pytest.mark.unit
    def test_unknown_runtime_class_writes_no_secret(self, mutator, mock_kube):
        with pytest.raises(UnsupportedRuntimeClass):
            mutator.mutate(make_pod(runtime_class="runc"), [make_pair()])
        mock_kube.create_secret.assert_not_called()
        mock_kube.replace_secret.assert_not_called()

    @pytest.mark.unit
    def test_mount_settings_reach_pod(self, mutator):
        attributes = {
            "cfs/mount-labels": "team: storage",
            "cfs/mount-annotations": "backup: nightly",
            "cfs/mount-delete-delay": "5m",
            "cfs/clean-cache": "true",
            "cfs/mount-service-account": "cfs-mount",
        }

        out = mutator.mutate(make_pod(), [make_pair(attributes=attributes)])

        metadata = out["metadata"]
        assert metadata["labels"]["team"] == "storage"
        assert metadata["labels"][INJECT_SIDECAR_DONE] == "true"
        assert metadata["annotations"]["backup"] == "nightly"
        assert metadata["annotations"][DELETE_DELAY_ANNOTATION] == "5m"
        assert metadata["annotations"][CLEAN_CACHE_ANNOTATION] == "true"
        assert out["spec"]["serviceAccountName"] == "cfs-mount"

    @pytest.mark.unit
    def test_workload_service_account_kept(self, mutator):
        pod = make_pod()
        pod["spec"]["serviceAccountName"] = "app"
        out = mutator.mutate(pod, [make_pair(attributes={"cfs/mount-service-account": "cfs-mount"})])
        assert out["spec"]["serviceAccountName"] == "app"

    @pytest.mark.unit
    def test_mount_labels_cannot_clear_done_label(self, mutator):
        attributes = {"cfs/mount-labels": f"{INJECT_SIDECAR_DONE}: 'false'"}
        out = mutator.mutate(make_pod(), [make_pair(attributes=attributes)])
        assert out["metadata"]["labels"][INJECT_SIDECAR_DONE] == "true"

    @pytest.mark.unit
    def test_existing_init_container_name_kept_apart(self, mutator):
        pod = make_pod()
        pod["spec"]["initContainers"] = [{"name": INIT_CONTAINER_NAME, "image": "busybox"}]

        out = mutator.mutate(pod, [make_pair()])

        names = _names(out["spec"]["initContainers"])
        assert names == [f"{INIT_CONTAINER_NAME}-0", INIT_CONTAINER_NAME]
        assert out["spec"]["initContainers"][1]["image"] == "busybox"

    @pytest.mark.unit
    def test_init_container_name_clashing_with_app_container(self, mutator):
        pod = make_pod()
        pod["spec"]["containers"].append({"name": INIT_CONTAINER_NAME, "image": "busybox"})

        out = mutator.mutate(pod, [make_pair()])

        init_name = out["spec"]["initContainers"][0]["name"]
        assert init_name != INIT_CONTAINER_NAME
        assert init_name not in _names(out["spec"]["containers"])

    @pytest.mark.unit
    def test_one_gib_is_enough(self, mutator):
        out = mutator.mutate(make_pod(), [make_pair(storage="1Gi")])
        post_start = out["spec"]["containers"][0]["lifecycle"]["postStart"]["exec"]["command"][2]
        assert "capacity=1 " in post_start

    @pytest.mark.unit
    def test_two_volumes_have_distinct_names(self, mutator):
        pod = make_pod(claims=(("a", "claim-a"), ("b", "claim-b")))
        pairs = [make_pair("a", "claim-a", "pv-a", fs="fs-a"), make_pair("b", "claim-b", "pv-b", fs="fs-b")]

        out = mutator.mutate(pod, pairs)

        spec = out["spec"]
        containers = _names(spec["containers"]) + _names(spec["initContainers"])
        volumes = _names(spec["volumes"])
        assert len(containers) == len(set(containers))
        assert len(volumes) == len(set(volumes))
        assert _names(spec["containers"])[:2] == [f"{CONTAINER_NAME}-1", CONTAINER_NAME]
        for container in spec["containers"]:
            for mount in container.get("volumeMounts") or []:
                assert mount["name"] in volumes
        env = {e["name"]: e["value"] for e in spec["initContainers"][0]["env"]}
        assert env["FILESYSTEM_NAMES"] == "fs-a,fs-b"
        assert env["SIDECAR_CONTAINER_NAMES"] == f"{CONTAINER_NAME},{CONTAINER_NAME}-1"

    @pytest.mark.unit
    def test_tee_escalation(self, mutator):
        pod = make_pod(claims=(("a", "claim-a"), ("b", "claim-b")), runtime_class="kata-qemu")
        pairs = [
            make_pair("a", "claim-a", "pv-a", runtime="vm"),
            make_pair("b", "claim-b", "pv-b", runtime="tee"),
        ]

        out = mutator.mutate(pod, pairs)

        assert out["spec"]["runtimeClassName"] == "kata-cc"
        assert out["metadata"]["annotations"][RUNTIME_ANNOTATION] == "tee"

    @pytest.mark.unit
    def test_sidecar_image_and_pull_secrets(self, mock_kube):
        config = ControllerConfig(sidecar_image="registry/mount:pinned", sidecar_image_pull_secrets=("regcred",))
        pod = make_pod()
        pod["spec"]["imagePullSecrets"] = [{"name": "regcred"}]

        out = SidecarMutator(config, mock_kube).mutate(pod, [make_pair()])

        assert out["spec"]["containers"][0]["image"] == "registry/mount:pinned"
        assert out["spec"]["imagePullSecrets"] == [{"name": "regcred"}]

    @pytest.mark.unit
    def test_test_mode_meta_url(self, mock_kube):
        config = ControllerConfig(test_mode=True, test_meta_url="redis.test:6379")
        out = SidecarMutator(config, mock_kube).mutate(make_pod(), [make_pair()])
        metaurl = [e["value"] for e in out["spec"]["containers"][0]["env"] if e["name"] == "metaurl"][0]
        assert metaurl.startswith("rediss://redis.test:6379/1?")


class TestCreateOrUpdateSecret:
    """Tests for SidecarMutator.create_or_update_secret."""

    @staticmethod
    def _secret():
        return client.V1Secret(
            metadata=client.V1ObjectMeta(name="data-secret", namespace="default"),
            data={"check_mount.sh": "c2NyaXB0"},
        )

    @pytest.mark.unit
    def test_creates_missing(self, mutator, mock_kube):
        mock_kube.get_secret.side_effect = ResourceNotFound(kind="Secret", name="default/data-secret")
        secret = self._secret()
        mutator.create_or_update_secret(secret)
        mock_kube.create_secret.assert_called_once_with(secret)
        mock_kube.replace_secret.assert_not_called()

    @pytest.mark.unit
    def test_updates_existing(self, mutator, mock_kube):
        existing = client.V1Secret(metadata=client.V1ObjectMeta(name="data-secret", namespace="default"), data={})
        mock_kube.get_secret.return_value = existing
        mutator.create_or_update_secret(self._secret())
        mock_kube.create_secret.assert_not_called()
        mock_kube.replace_secret.assert_called_once_with(existing)
        assert existing.data == {"check_mount.sh": "c2NyaXB0"}

    @pytest.mark.unit
    def test_lost_create_race_updates(self, mutator, mock_kube):
        existing = client.V1Secret(metadata=client.V1ObjectMeta(name="data-secret", namespace="default"), data={})
        mock_kube.get_secret.side_effect = [ResourceNotFound(kind="Secret", name="default/data-secret"), existing]
        mock_kube.create_secret.side_effect = ResourceAlreadyExists(kind="Secret", name="default/data-secret")

        mutator.create_or_update_secret(self._secret())

        mock_kube.replace_secret.assert_called_once_with(existing)

    @pytest.mark.unit
    def test_repeated_mutation_is_idempotent(self, mutator, mock_kube):
        stored = {}

        def _get(name, namespace):
            if name not in stored:
                raise ResourceNotFound(kind="Secret", name=f"{namespace}/{name}")
            return stored[name]

        def _create(secret):
            stored[secret.metadata.name] = secret
            return secret

        mock_kube.get_secret.side_effect = _get
        mock_kube.create_secret.side_effect = _create

        mutator.mutate(make_pod(), [make_pair()])
        first = copy.deepcopy(stored["data-secret"].data)
        mutator.mutate(make_pod(), [make_pair()])

        assert list(stored) == ["data-secret"]
        assert stored["data-secret"].data == first
        assert mock_kube.create_secret.call_count == 1
        assert mock_kube.replace_secret.call_count == 1

    @pytest.mark.unit
    def test_uses_lock_for_key(self, config, mock_kube):
        locks = MagicMock()
        mock_kube.get_secret.return_value = self._secret()
        SidecarMutator(config, mock_kube, locks).create_or_update_secret(self._secret())
        locks.get.assert_called_once_with("default/data-secret")


class TestVolumeSettingsInput:
    """Tests for volume_settings_input."""

    @pytest.mark.unit
    def test_read_only(self):
        pv = make_pv(access_modes=("ReadOnlyMany",), mount_options=["writeback"], attributes={"mountOptions": "a,b"})
        ctx, options = volume_settings_input(pv)
        assert options == ["ro", "writeback", "a", "b"]
        assert ctx["subPath"] == "pv-1"

    @pytest.mark.unit
    def test_read_write(self):
        ctx, options = volume_settings_input(make_pv(access_modes=("ReadWriteMany", "ReadOnlyMany")))
        assert options == []


class TestCapacityGib:
    """Tests for capacity_gib."""

    @pytest.mark.unit
    def test_rounds_down(self):
        assert capacity_gib(make_pvc(storage="10Gi")) == 10
        assert capacity_gib(make_pvc(storage="1536Mi")) == 1

    @pytest.mark.unit
    def test_missing_request(self):
        pvc = make_pvc()
        pvc.spec.resources = None
        with pytest.raises(CapacityTooSmall):
            capacity_gib(pvc)
