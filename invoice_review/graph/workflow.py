from langgraph.graph import StateGraph, START, END
from invoice_review.graph.state import (
    WorkflowState,
    STEP_EXTRACT,
    STEP_MERGE_CORRECTIONS,
    STEP_VALIDATE,
    STEP_ROUTE,
    STEP_SUSPEND_FOR_REVIEW,
    STEP_FINALIZE,
    serialize_state,
    deserialize_state,
)
from invoice_review.agents.extraction_engine import ExtractionEngine
from invoice_review.agents.llm_field_parser import LLMFieldParser
from invoice_review.agents.validation_engine import ValidationEngine, build_rule_set, default_rule_definitions
from invoice_review.agents.approval_router import ApprovalRouter
from invoice_review.agents.checkpoint_controller import CheckpointController
from invoice_review.agents.resume_tokens import ResumeTokenService
from invoice_review.config.settings import PipelineConfig
from invoice_review.config.logger import setup_logger
from invoice_review.config.exception import (
    AppException,
    CheckpointPersistenceError,
    PipelineError,
    StoreUnavailableError,
)
from invoice_review.models.schemas import (
    Decision,
    Document,
    ExtractionResult,
    WorkflowCheckpoint,
    WorkflowOutcome,
    WorkflowStatus,
    utcnow,
)
from invoice_review.stores.base import WorkflowStore
from invoice_review.stores.memory import InMemoryWorkflowStore
from invoice_review.stores.sql import SqlWorkflowStore
from invoice_review.tools.field_parser import AMOUNT_FIELDS, FieldParser, parse_amount
from invoice_review.tools.notifier import LoggingNotifier, Notifier
from invoice_review.tools.pdf_extractor import ExtractionStrategy, FallbackStrategy, FastPathStrategy
from invoice_review.utils.retry import retry_async
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timedelta
import time
import sys

logger = setup_logger("InvoiceReviewWorkflow", "workflow.log")

SUMMARY_FIELDS = ("vendor", "invoice_number", "invoice_date", "total", "currency")


def build_store(config: PipelineConfig) -> WorkflowStore:
    """SQL store when a database URL is configured, in-memory otherwise."""
    if config.database_url:
        store = SqlWorkflowStore(config.database_url)
        store.create_tables()
        return store
    logger.warning("No INVOICE_DATABASE_URL set; review checkpoints will not survive a restart")
    return InMemoryWorkflowStore()


class InvoiceReviewWorkflow:
    """LangGraph workflow: extract, validate, route, and suspend for human review"""

    def __init__(
        self,
        config: PipelineConfig = None,
        store: WorkflowStore = None,
        notifier: Notifier = None,
        fast_strategy: ExtractionStrategy = None,
        fallback_strategy: ExtractionStrategy = None,
        rule_definitions: List[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = None,
    ):
        try:
            logger.info("Initializing InvoiceReviewWorkflow")
            self.config = config or PipelineConfig.from_env()
            self.clock = clock or utcnow
            self.store = store or build_store(self.config)
            self.notifier = notifier or LoggingNotifier()

            parser = FieldParser()
            if fallback_strategy is None:
                llm_parser = LLMFieldParser(self.config) if self.config.llm_enabled else None
                fallback_strategy = FallbackStrategy(field_parser=parser, llm_parser=llm_parser)
            self.extraction_engine = ExtractionEngine(
                self.config,
                fast=fast_strategy or FastPathStrategy(field_parser=parser),
                fallback=fallback_strategy,
            )

            # A malformed rule set stops initialization here
            self.rule_set = build_rule_set(
                rule_definitions if rule_definitions is not None else default_rule_definitions(self.config)
            )
            self.validation_engine = ValidationEngine(self.config, clock=self.clock)
            self.router = ApprovalRouter(self.config)
            self.checkpoint_controller = CheckpointController(self.store, clock=self.clock)
            self.token_service = ResumeTokenService(self.store, clock=self.clock)

            self.workflow = self._build_graph()
            logger.info("InvoiceReviewWorkflow initialized successfully")
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize InvoiceReviewWorkflow: {e}")
            raise AppException(e, sys)

    def _build_graph(self):
        """Build the LangGraph workflow"""
        logger.debug("Building LangGraph workflow")

        graph = StateGraph(WorkflowState)

        graph.add_node(STEP_EXTRACT, self._run_extract)
        graph.add_node(STEP_MERGE_CORRECTIONS, self._run_merge_corrections)
        graph.add_node(STEP_VALIDATE, self._run_validate)
        graph.add_node(STEP_ROUTE, self._run_route)
        graph.add_node(STEP_SUSPEND_FOR_REVIEW, self._run_suspend)
        graph.add_node(STEP_FINALIZE, self._run_finalize)

        # Fresh runs start at extraction; resumed runs start where the
        # reviewer's action says
        graph.add_conditional_edges(
            START,
            self._route_entry,
            {
                STEP_EXTRACT: STEP_EXTRACT,
                STEP_MERGE_CORRECTIONS: STEP_MERGE_CORRECTIONS,
                STEP_FINALIZE: STEP_FINALIZE,
            }
        )

        graph.add_edge(STEP_EXTRACT, STEP_MERGE_CORRECTIONS)
        graph.add_edge(STEP_MERGE_CORRECTIONS, STEP_VALIDATE)
        graph.add_edge(STEP_VALIDATE, STEP_ROUTE)
        graph.add_conditional_edges(
            STEP_ROUTE,
            self._route_after_decision,
            {
                "review": STEP_SUSPEND_FOR_REVIEW,
                "finalize": STEP_FINALIZE,
            }
        )
        # Suspension ends the run; resume() starts a new one
        graph.add_edge(STEP_SUSPEND_FOR_REVIEW, END)
        graph.add_edge(STEP_FINALIZE, END)

        logger.debug("LangGraph workflow built successfully")
        return graph.compile()

    def _trace(self, state: WorkflowState, step: str, start: float, **details) -> None:
        duration = time.time() - start
        state['execution_trace'][step] = {'duration_ms': duration * 1000, **details}
        state['current_step'] = step
        logger.info(f"Step '{step}' completed in {duration*1000:.2f}ms")

    async def _run_extract(self, state: WorkflowState) -> WorkflowState:
        """Run the extraction engine with timing"""
        logger.info("Running extraction")
        start = time.time()
        extraction = await self.extraction_engine.extract(state['document'])
        state['extraction'] = extraction
        self._trace(
            state, STEP_EXTRACT, start,
            method=extraction.method.value,
            confidence=extraction.overall_confidence,
            status='success' if extraction.overall_confidence > 0 else 'failed',
        )
        return state

    def _run_merge_corrections(self, state: WorkflowState) -> WorkflowState:
        """Apply reviewer corrections to the extracted fields"""
        start = time.time()
        corrections = state.get('reviewer_corrections') or {}
        extraction = state.get('extraction')

        if corrections and extraction is not None:
            logger.info(f"Merging reviewer corrections: {sorted(corrections)}")
            fields = dict(extraction.fields)
            confidence = dict(extraction.field_confidence)
            for name, value in corrections.items():
                if name in AMOUNT_FIELDS:
                    parsed = parse_amount(value)
                    value = parsed if parsed is not None else value
                fields[name] = value
                # Reviewer-entered values are taken as verified
                confidence[name] = 1.0

            state['extraction'] = ExtractionResult(
                fields=fields,
                field_confidence=confidence,
                overall_confidence=round(sum(confidence.values()) / len(confidence), 4),
                method=extraction.method,
                notes=extraction.notes + [f"Reviewer corrected: {', '.join(sorted(corrections))}"],
                raw_text=extraction.raw_text,
                quality_score=extraction.quality_score,
            )
            state['reviewer_corrections'] = {}

        self._trace(state, STEP_MERGE_CORRECTIONS, start, corrections=len(corrections), status='success')
        return state

    def _run_validate(self, state: WorkflowState) -> WorkflowState:
        """Run business-rule validation with timing"""
        logger.info("Running validation")
        start = time.time()
        validation = self.validation_engine.validate(state['extraction'], self.rule_set)
        state['validation'] = validation
        self._trace(
            state, STEP_VALIDATE, start,
            confidence=validation.adjusted_confidence,
            violations=len(validation.violations),
            status='success' if validation.is_valid else 'violations',
        )
        return state

    def _run_route(self, state: WorkflowState) -> WorkflowState:
        """Run the approval router"""
        start = time.time()
        decision = self.router.route(state['validation'], state['extraction'].fields.get('total'))
        state['decision'] = decision
        self._trace(state, STEP_ROUTE, start, decision=decision.decision.value, reason=decision.reason, status='success')
        return state

    async def _run_suspend(self, state: WorkflowState) -> WorkflowState:
        """Checkpoint the workflow, issue a resume token and notify a reviewer"""
        start = time.time()
        workflow_id = state['workflow_id']
        decision = state['decision']

        state['status'] = WorkflowStatus.AWAITING_REVIEW.value
        state['current_step'] = STEP_SUSPEND_FOR_REVIEW
        payload = serialize_state(state)

        try:
            checkpoint = await retry_async(
                lambda: self.checkpoint_controller.suspend(workflow_id, STEP_SUSPEND_FOR_REVIEW, payload),
                max_retries=self.config.max_retries,
                retry_delay=self.config.retry_delay,
                description=f"checkpoint for {workflow_id}",
            )
        except StoreUnavailableError as e:
            logger.error(f"Could not suspend workflow {workflow_id}: {e}")
            raise CheckpointPersistenceError(f"Could not suspend workflow {workflow_id}: {e}") from e

        try:
            token = await retry_async(
                lambda: self.token_service.issue(
                    workflow_id, checkpoint.checkpoint_id, timedelta(seconds=decision.review_ttl_seconds)
                ),
                max_retries=self.config.max_retries,
                retry_delay=self.config.retry_delay,
                description=f"resume token for {workflow_id}",
            )
        except Exception as e:
            # Without a token nobody can resume this checkpoint; retire it so
            # the workflow is not blocked from suspending again
            logger.error(f"Could not issue resume token for {workflow_id}: {e}")
            try:
                await self.checkpoint_controller.release(checkpoint)
            except Exception as release_error:
                logger.error(f"Could not release checkpoint {checkpoint.checkpoint_id}: {release_error}")
            raise CheckpointPersistenceError(f"Could not issue resume token for {workflow_id}: {e}") from e

        state['resume_token'] = token
        try:
            await self.notifier.notify(token, self._review_summary(state))
        except Exception as e:
            # The checkpoint and token exist; the boundary can re-send the link
            logger.error(f"Review notification failed for {workflow_id}: {e}")
            state['errors'].append(f"notification failed: {e}")

        self._trace(state, STEP_SUSPEND_FOR_REVIEW, start, reason=decision.reason, status='suspended')
        return state

    def _run_finalize(self, state: WorkflowState) -> WorkflowState:
        """Record the final outcome"""
        start = time.time()
        action = state.get('review_action')
        decision = state.get('decision')

        if action == 'reject':
            state['status'] = WorkflowStatus.RESUMED_REJECTED.value
            state['final_decision'] = 'rejected'
        elif action == 'approve':
            state['status'] = WorkflowStatus.RESUMED_APPROVED.value
            state['final_decision'] = 'approved'
        elif decision is not None and decision.decision == Decision.AUTO_APPROVE:
            state['status'] = WorkflowStatus.APPROVED.value
            state['final_decision'] = 'approved'
        else:
            state['status'] = WorkflowStatus.REJECTED.value
            state['final_decision'] = 'rejected'
            state['rejection_reason'] = decision.reason if decision else 'no_decision'

        self._trace(state, STEP_FINALIZE, start, final_decision=state['final_decision'], status='success')
        return state

    def _route_entry(self, state: WorkflowState) -> str:
        return state.get('resume_from') or STEP_EXTRACT

    def _route_after_decision(self, state: WorkflowState) -> str:
        """Route after the approval decision"""
        if state['decision'].decision == Decision.HUMAN_REVIEW:
            logger.warning(f"Human review required ({state['decision'].reason})")
            return "review"
        return "finalize"

    def _review_summary(self, state: WorkflowState) -> Dict[str, Any]:
        """Display fields for the reviewer; no internal identifiers"""
        fields = state['extraction'].fields if state.get('extraction') else {}
        summary = {name: fields.get(name) for name in SUMMARY_FIELDS}
        summary['reason'] = state['decision'].reason
        summary['confidence'] = state['decision'].confidence
        summary['violations'] = [v.message for v in state['validation'].violations] if state.get('validation') else []
        summary['expires_in_seconds'] = state['decision'].review_ttl_seconds
        return summary

    async def process(self, content: bytes, workflow_id: str, filename: Optional[str] = None) -> WorkflowOutcome:
        """
        Run a new document through the pipeline.

        Raises:
            SizeLimitError, FormatError: input problems, reported immediately
            CheckpointPersistenceError: review state could not be saved; the
                document must be reported as failed
        """
        logger.info("=" * 60)
        logger.info(f"Processing workflow {workflow_id}: {filename or '<bytes>'}")
        logger.info("=" * 60)

        self.extraction_engine.check_size(len(content))
        document = Document.from_bytes(content, filename=filename)
        self.extraction_engine.check_document(document)

        initial_state = WorkflowState(
            workflow_id=workflow_id,
            document=document,
            document_info=document.summary(),
            extraction=None,
            validation=None,
            decision=None,
            resume_token=None,
            review_action=None,
            reviewer_feedback=None,
            reviewer_corrections={},
            rejection_reason=None,
            review_history=[],
            status=WorkflowStatus.RUNNING.value,
            final_decision=None,
            errors=[],
            processing_timestamp=self.clock().isoformat(),
            execution_trace={},
            resume_from=STEP_EXTRACT,
            current_step="",
        )
        return await self._invoke(initial_state)

    async def resume(
        self,
        token: str,
        action: str,
        feedback: Optional[str] = None,
        corrections: Optional[Dict[str, Any]] = None,
    ) -> WorkflowOutcome:
        """
        Continue a suspended workflow after a reviewer acts.

        The action is checked before the token is touched, so a malformed
        request leaves the link usable.

        Raises:
            InvalidReviewActionError: unknown action or malformed corrections
            TokenNotFoundError, TokenExpiredError, TokenAlreadyConsumedError,
            CheckpointNotFoundError: terminal, user-facing
        """
        self.checkpoint_controller.parse_action(action, corrections)
        checkpoint = await retry_async(
            lambda: self.checkpoint_controller.resume(token),
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            description="resume",
        )
        return await self._continue(checkpoint, action, feedback, corrections)

    async def resume_redeemed(
        self,
        workflow_id: str,
        checkpoint_ref: str,
        action: str,
        feedback: Optional[str] = None,
        corrections: Optional[Dict[str, Any]] = None,
    ) -> WorkflowOutcome:
        """
        Continue from the pair returned by ResumeTokenService.redeem, for
        callers that redeem the token themselves. Claims the checkpoint, so
        each redeemed pair resumes at most once.

        Raises:
            InvalidReviewActionError, CheckpointNotFoundError,
            TokenAlreadyConsumedError
        """
        self.checkpoint_controller.parse_action(action, corrections)
        checkpoint = await retry_async(
            lambda: self.checkpoint_controller.resume_redeemed(workflow_id, checkpoint_ref),
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            description=f"resume {workflow_id}",
        )
        return await self._continue(checkpoint, action, feedback, corrections)

    async def _continue(
        self,
        checkpoint: WorkflowCheckpoint,
        action: str,
        feedback: Optional[str],
        corrections: Optional[Dict[str, Any]],
    ) -> WorkflowOutcome:
        plan = self.checkpoint_controller.determine_resume_action(
            checkpoint.step_id, action, feedback=feedback, corrections=corrections
        )

        state = deserialize_state(checkpoint.state_payload)
        state.update(plan.state_updates)
        state['status'] = plan.status.value
        state['resume_from'] = plan.next_step
        state['review_history'] = list(state.get('review_history') or []) + [{
            'action': plan.state_updates['review_action'],
            'feedback': feedback,
            'corrected_fields': sorted(corrections or {}),
            'resumed_at': self.clock().isoformat(),
        }]
        logger.info(f"Workflow {checkpoint.workflow_id}: reviewer chose '{action}', continuing at '{plan.next_step}'")
        return await self._invoke(state)

    async def _invoke(self, state: WorkflowState) -> WorkflowOutcome:
        start_time = time.time()
        try:
            logger.info("Starting workflow execution")
            final_state = await self.workflow.ainvoke(state)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Workflow execution failed: {e}")
            raise AppException(e, sys)

        logger.info(
            f"Workflow {final_state['workflow_id']} -> {final_state['status']} "
            f"({time.time() - start_time:.2f}s)"
        )
        return self._format_output(final_state)

    def _format_output(self, state: WorkflowState) -> WorkflowOutcome:
        """Format final output"""
        return WorkflowOutcome(
            workflow_id=state['workflow_id'],
            status=WorkflowStatus(state['status']),
            decision=state.get('decision'),
            final_decision=state.get('final_decision'),
            review_history=state.get('review_history') or [],
            extraction=state.get('extraction'),
            validation=state.get('validation'),
            resume_token=state.get('resume_token') if state['status'] == WorkflowStatus.AWAITING_REVIEW.value else None,
            reviewer_feedback=state.get('reviewer_feedback'),
            rejection_reason=state.get('rejection_reason'),
            errors=state.get('errors') or [],
            execution_trace=state.get('execution_trace') or {},
        )
