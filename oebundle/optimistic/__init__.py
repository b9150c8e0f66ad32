from .assembler import (
    EXECUTION_FEE_SIGNERS,
    LAMPORTS_PER_SIGNER,
    MAX_COMPUTE_UNIT_LIMIT,
    OptimisticBundle,
    OptimisticExecution,
    OptimisticExecutionAssembler,
    OptimisticExecutionConfig,
    dynamic_compute_unit_limit,
    verify_execute_batch_binding,
)
from .intent import (
    IntentState,
    IntentStateError,
    OptimisticIntent,
    PreparedTarget,
    TargetBindingError,
    build_validation_message,
    merge_account_flags,
    prepare_target,
    reconstruct_target_hash,
)
from .program import (
    SMART_ACCOUNT_DISCRIMINATOR,
    DeconstructedInstruction,
    SmartAccountAccounts,
    SmartAccountStateError,
    ValidationArgs,
    anchor_discriminator,
    decode_execute_batch_args,
    decode_optimistic_validation,
    decode_post_optimistic_execution,
    decode_smart_account_nonce,
    encode_execute_batch_args,
    execute_batch,
    optimistic_validation,
    post_optimistic_execution,
    smart_account_id_from_string,
    validate_optimistic_execution,
)

__all__ = [
    "DeconstructedInstruction",
    "EXECUTION_FEE_SIGNERS",
    "IntentState",
    "IntentStateError",
    "LAMPORTS_PER_SIGNER",
    "MAX_COMPUTE_UNIT_LIMIT",
    "OptimisticBundle",
    "OptimisticExecution",
    "OptimisticExecutionAssembler",
    "OptimisticExecutionConfig",
    "OptimisticIntent",
    "PreparedTarget",
    "SMART_ACCOUNT_DISCRIMINATOR",
    "SmartAccountAccounts",
    "SmartAccountStateError",
    "TargetBindingError",
    "ValidationArgs",
    "anchor_discriminator",
    "build_validation_message",
    "decode_execute_batch_args",
    "decode_optimistic_validation",
    "decode_post_optimistic_execution",
    "decode_smart_account_nonce",
    "dynamic_compute_unit_limit",
    "encode_execute_batch_args",
    "execute_batch",
    "merge_account_flags",
    "optimistic_validation",
    "post_optimistic_execution",
    "prepare_target",
    "reconstruct_target_hash",
    "smart_account_id_from_string",
    "validate_optimistic_execution",
    "verify_execute_batch_binding",
]
