import json

import pytest

from conftest import FakeIAM, FakeLambda, FakeStorage, client_error
from core.errors import NotificationWireFailure, ProvisioningConflict
from provisioning.artifact import upload_handler_artifact
from provisioning.functions import FunctionDeployer, function_name_for
from provisioning.iam import BASIC_EXECUTION_POLICY_ARN, ExecutionRoleManager, bucket_access_policy
from provisioning.reconciler import ProvisioningReconciler
from provisioning.trigger import TriggerWiring, desired_notification, merge_notification, notification_id_for

BUCKET = "s3uplink-test"
FN = function_name_for("test")


def _reconciler(instance_config, provisioning_settings, iam, lam, storage, sleep):
    storage.buckets[BUCKET] = instance_config.region
    return ProvisioningReconciler(
        config=instance_config,
        settings=provisioning_settings,
        iam_client=iam,
        lambda_client=lam,
        storage=storage,
        sleep=sleep,
    )


# ---------------------------------------------------------------------
# Full reconciliation
# ---------------------------------------------------------------------
@pytest.mark.asyncio
async def test_first_run_creates_everything(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep):
    rec = _reconciler(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep)

    state = await rec.reconcile(BUCKET)

    assert state.changed
    assert state.role_changes == ["role-created", "logging-policy", "inline-policy"]
    assert state.function_changes == ["function-created"]
    assert state.trigger_changes == ["invoke-permission", "notification"]
    assert state.role_arn.endswith("role/S3UplinkLambdaExecRole-test")
    assert state.function_name == FN

    fn = fake_lambda.functions[FN]
    assert fn["Role"] == state.role_arn
    assert fn["Environment"]["Variables"] == {
        "WEBHOOK_URL": "https://app.example.com/api/test/confirm",
        "BUCKET": BUCKET,
        "INSTANCE": "test",
    }

    lambdas = storage.notifications[BUCKET]["LambdaFunctionConfigurations"]
    assert len(lambdas) == 1
    assert lambdas[0]["LambdaFunctionArn"] == fn["FunctionArn"]
    assert lambdas[0]["Events"] == ["s3:ObjectCreated:*"]
    assert lambdas[0]["Filter"]["Key"]["FilterRules"] == [{"Name": "prefix", "Value": "uploads/"}]


@pytest.mark.asyncio
async def test_second_run_changes_nothing(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep):
    rec = _reconciler(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep)
    await rec.reconcile(BUCKET)
    iam_mutations = list(fake_iam.mutations)
    lambda_mutations = list(fake_lambda.mutations)
    writes = storage.notification_writes

    state = await rec.reconcile(BUCKET)

    assert not state.changed
    assert fake_iam.mutations == iam_mutations
    assert fake_lambda.mutations == lambda_mutations
    assert storage.notification_writes == writes


@pytest.mark.asyncio
async def test_code_drift_updates_code_only(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep):
    rec = _reconciler(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep)
    await rec.reconcile(BUCKET)
    fake_lambda.functions[FN]["CodeSha256"] = "stale"
    fake_lambda.mutations.clear()

    state = await rec.reconcile(BUCKET)

    assert state.function_changes == ["code"]
    assert fake_lambda.mutations == ["update_function_code"]
    assert fake_lambda.functions[FN]["CodeSha256"] == upload_handler_artifact().sha256


@pytest.mark.asyncio
async def test_config_drift_updates_configuration(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep):
    rec = _reconciler(instance_config, provisioning_settings, fake_iam, fake_lambda, storage, recording_sleep)
    await rec.reconcile(BUCKET)
    fake_lambda.functions[FN]["Timeout"] = 3
    fake_lambda.functions[FN]["Environment"] = {"Variables": {"WEBHOOK_URL": "http://old"}}
    fake_lambda.mutations.clear()

    state = await rec.reconcile(BUCKET)

    assert state.function_changes == ["configuration"]
    assert fake_lambda.mutations == ["update_function_configuration"]
    fn = fake_lambda.functions[FN]
    assert fn["Timeout"] == 10
    assert fn["Environment"]["Variables"]["WEBHOOK_URL"] == "https://app.example.com/api/test/confirm"


# ---------------------------------------------------------------------
# Function deployer
# ---------------------------------------------------------------------
@pytest.mark.asyncio
async def test_create_retries_while_role_propagates(instance_config, provisioning_settings, fake_lambda, recording_sleep, sleeps):
    fake_lambda.create_errors = [
        client_error("InvalidParameterValueException", "CreateFunction", "The role defined for the function cannot be assumed by Lambda."),
        client_error("InvalidParameterValueException", "CreateFunction"),
    ]
    settings = provisioning_settings.__class__(**{**provisioning_settings.__dict__, "backoff_seconds": 2.0})
    deployer = FunctionDeployer(fake_lambda, instance_config, settings, sleep=recording_sleep)

    result = await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")

    assert result.changes == ["function-created"]
    assert sleeps[:2] == [2.0, 4.0]


@pytest.mark.asyncio
async def test_create_gives_up_on_other_errors(instance_config, provisioning_settings, fake_lambda, recording_sleep):
    fake_lambda.create_errors = [client_error("AccessDeniedException", "CreateFunction")]
    deployer = FunctionDeployer(fake_lambda, instance_config, provisioning_settings, sleep=recording_sleep)

    with pytest.raises(Exception) as exc:
        await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")
    assert "AccessDeniedException" in str(exc.value)


@pytest.mark.asyncio
async def test_update_survives_conflicts(instance_config, provisioning_settings, fake_lambda, recording_sleep):
    deployer = FunctionDeployer(fake_lambda, instance_config, provisioning_settings, sleep=recording_sleep)
    await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")
    fake_lambda.functions[FN]["CodeSha256"] = "stale"
    fake_lambda.update_conflicts = 2

    result = await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")
    assert result.changes == ["code"]


@pytest.mark.asyncio
async def test_update_conflict_exhaustion(instance_config, provisioning_settings, fake_lambda, recording_sleep):
    deployer = FunctionDeployer(fake_lambda, instance_config, provisioning_settings, sleep=recording_sleep)
    await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")
    fake_lambda.functions[FN]["CodeSha256"] = "stale"
    fake_lambda.update_conflicts = 100

    with pytest.raises(ProvisioningConflict):
        await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")


@pytest.mark.asyncio
async def test_create_race_lost_converges_on_winner(instance_config, provisioning_settings, fake_lambda, recording_sleep):
    fake_lambda.lose_create_race = True
    deployer = FunctionDeployer(fake_lambda, instance_config, provisioning_settings, sleep=recording_sleep)

    result = await deployer.deploy(BUCKET, "arn:aws:iam::0:role/r")

    assert result.changes == []
    assert result.function_arn == fake_lambda.functions[FN]["FunctionArn"]
    assert "create_function" not in fake_lambda.mutations


# ---------------------------------------------------------------------
# Execution role
# ---------------------------------------------------------------------
@pytest.mark.asyncio
async def test_role_policies_are_scoped_to_bucket(fake_iam):
    await ExecutionRoleManager(fake_iam, "test").ensure_lambda_exec_role(BUCKET)

    doc = fake_iam.inline[("S3UplinkLambdaExecRole-test", "S3Uplink-S3Access-test")]
    assert doc == bucket_access_policy(BUCKET)
    resources = [s["Resource"] for s in doc["Statement"]]
    assert "*" not in resources
    assert resources == [f"arn:aws:s3:::{BUCKET}/*", f"arn:aws:s3:::{BUCKET}"]
    assert fake_iam.attached["S3UplinkLambdaExecRole-test"] == [BASIC_EXECUTION_POLICY_ARN]


@pytest.mark.asyncio
async def test_trust_and_inline_policy_drift_is_repaired(fake_iam):
    mgr = ExecutionRoleManager(fake_iam, "test")
    await mgr.ensure_lambda_exec_role(BUCKET)
    fake_iam.roles["S3UplinkLambdaExecRole-test"]["AssumeRolePolicyDocument"] = {"Version": "2012-10-17", "Statement": []}
    fake_iam.mutations.clear()

    result = await mgr.ensure_lambda_exec_role("s3uplink-other")

    assert result.changes == ["trust-policy", "inline-policy"]
    assert fake_iam.mutations == ["update_assume_role_policy", "put_role_policy"]


@pytest.mark.asyncio
async def test_role_created_concurrently_is_adopted_and_diffed(fake_iam):
    fake_iam.racer_trust_policy = {"Version": "2012-10-17", "Statement": []}

    result = await ExecutionRoleManager(fake_iam, "test").ensure_lambda_exec_role(BUCKET)

    assert result.role_arn.endswith("role/S3UplinkLambdaExecRole-test")
    assert result.changes == ["trust-policy", "logging-policy", "inline-policy"]
    assert "create_role" not in fake_iam.mutations


@pytest.mark.asyncio
async def test_url_encoded_policy_documents_compare_equal(fake_iam):
    from urllib.parse import quote

    mgr = ExecutionRoleManager(fake_iam, "test")
    await mgr.ensure_lambda_exec_role(BUCKET)
    key = ("S3UplinkLambdaExecRole-test", "S3Uplink-S3Access-test")
    fake_iam.inline[key] = quote(json.dumps(fake_iam.inline[key]))
    fake_iam.mutations.clear()

    result = await mgr.ensure_lambda_exec_role(BUCKET)
    assert result.changes == []


@pytest.mark.asyncio
async def test_already_attached_logging_policy_counts_as_success(fake_iam):
    fake_iam.attach_error = client_error("EntityAlreadyExists", "AttachRolePolicy")

    result = await ExecutionRoleManager(fake_iam, "test").ensure_lambda_exec_role(BUCKET)
    assert "logging-policy" not in result.changes


@pytest.mark.asyncio
async def test_lenient_mode_skips_missing_managed_policy(fake_iam):
    fake_iam.attach_error = client_error("NoSuchEntity", "AttachRolePolicy")

    result = await ExecutionRoleManager(fake_iam, "test", lenient=True).ensure_lambda_exec_role(BUCKET)
    assert "logging-policy" not in result.changes

    with pytest.raises(Exception):
        await ExecutionRoleManager(fake_iam, "test").ensure_lambda_exec_role(BUCKET)


# ---------------------------------------------------------------------
# Bucket trigger
# ---------------------------------------------------------------------
ARN = f"arn:aws:lambda:eu-central-1:0:function:{FN}"


def test_notification_id_is_capped():
    assert len(notification_id_for("f" * 80)) == 50
    assert notification_id_for(FN) == f"uploads-{FN}"


def test_merge_preserves_unrelated_entries():
    other = {"Id": "thumbs", "LambdaFunctionArn": "arn:other", "Events": ["s3:ObjectCreated:Put"]}
    queue = {"Id": "q", "QueueArn": "arn:q", "Events": ["s3:ObjectRemoved:*"]}
    stale = {"Id": notification_id_for(FN), "LambdaFunctionArn": ARN, "Events": ["s3:ObjectCreated:Put"]}
    current = {"LambdaFunctionConfigurations": [other, stale], "QueueConfigurations": [queue]}
    desired = desired_notification(FN, ARN)

    merged = merge_notification(current, desired)

    assert merged["LambdaFunctionConfigurations"] == [other, desired]
    assert merged["QueueConfigurations"] == [queue]


def test_merge_is_noop_when_entry_matches():
    desired = desired_notification(FN, ARN)
    # S3 echoes rule names capitalized
    echoed = json.loads(json.dumps(desired).replace('"prefix"', '"Prefix"'))
    assert merge_notification({"LambdaFunctionConfigurations": [echoed]}, desired) is None


async def _wired_function(fake_lambda, instance_config, provisioning_settings, sleep):
    await FunctionDeployer(fake_lambda, instance_config, provisioning_settings, sleep=sleep).deploy(BUCKET, "arn:aws:iam::0:role/r")


@pytest.mark.asyncio
async def test_notification_write_retries_with_linear_backoff(instance_config, provisioning_settings, fake_lambda, storage, recording_sleep, sleeps):
    await _wired_function(fake_lambda, instance_config, provisioning_settings, recording_sleep)
    storage.notification_errors = [
        client_error("InvalidArgument", "PutBucketNotificationConfiguration", "Unable to validate the destination"),
        client_error("InvalidArgument", "PutBucketNotificationConfiguration"),
    ]
    settings = provisioning_settings.__class__(**{**provisioning_settings.__dict__, "backoff_seconds": 1.5})
    sleeps.clear()

    result = await TriggerWiring(fake_lambda, storage, settings, sleep=recording_sleep).ensure_upload_trigger(FN, BUCKET)

    assert "notification" in result.changes
    assert sleeps == [1.5, 3.0]
    assert storage.notification_writes == 3


@pytest.mark.asyncio
async def test_notification_write_exhaustion(instance_config, provisioning_settings, fake_lambda, storage, recording_sleep):
    await _wired_function(fake_lambda, instance_config, provisioning_settings, recording_sleep)
    storage.notification_errors = [client_error("InvalidArgument", "PutBucketNotificationConfiguration")] * 10

    with pytest.raises(NotificationWireFailure):
        await TriggerWiring(fake_lambda, storage, provisioning_settings, sleep=recording_sleep).ensure_upload_trigger(FN, BUCKET)
    assert storage.notification_writes == provisioning_settings.notification_attempts


@pytest.mark.asyncio
async def test_missing_entry_after_write_fails_verification(instance_config, provisioning_settings, fake_lambda, storage, recording_sleep):
    await _wired_function(fake_lambda, instance_config, provisioning_settings, recording_sleep)
    storage.drop_notification_writes = True

    with pytest.raises(NotificationWireFailure):
        await TriggerWiring(fake_lambda, storage, provisioning_settings, sleep=recording_sleep).ensure_upload_trigger(FN, BUCKET)


@pytest.mark.asyncio
async def test_existing_invoke_permission_is_not_an_error(instance_config, provisioning_settings, fake_lambda, storage, recording_sleep):
    await _wired_function(fake_lambda, instance_config, provisioning_settings, recording_sleep)
    wiring = TriggerWiring(fake_lambda, storage, provisioning_settings, sleep=recording_sleep)

    await wiring.ensure_upload_trigger(FN, BUCKET)
    result = await wiring.ensure_upload_trigger(FN, BUCKET)
    assert result.changes == []
