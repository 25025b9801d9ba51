import asyncio
import json
import uuid
from pathlib import Path
from invoice_review.graph.workflow import InvoiceReviewWorkflow
from invoice_review.config.exception import PipelineError
from dotenv import load_dotenv

async def main():
    """Main execution function"""

    load_dotenv()

    workflow = InvoiceReviewWorkflow()

    invoice_dir = Path("data/invoices")
    output_dir = Path("data/outputs")
    output_dir.mkdir(parents=True, exist_ok=True)

    invoice_files = sorted(invoice_dir.glob("*.pdf"))

    for invoice_file in invoice_files:
        workflow_id = f"{invoice_file.stem}-{uuid.uuid4().hex[:8]}"
        try:
            outcome = await workflow.process(
                invoice_file.read_bytes(),
                workflow_id,
                filename=invoice_file.name
            )

            output_file = output_dir / f"{invoice_file.stem}_result.json"
            with open(output_file, 'w') as f:
                json.dump(outcome.to_dict(), f, indent=2)

            print(f"✅ {invoice_file.name}: {outcome.status.value} -> {output_file}\n")

        except PipelineError as e:
            print(f"❌ {invoice_file.name} failed [{e.code}]: {e.user_message}\n")
            continue
        except Exception as e:
            print(f"❌ Error processing {invoice_file}: {e}\n")
            continue

if __name__ == "__main__":
    asyncio.run(main())
