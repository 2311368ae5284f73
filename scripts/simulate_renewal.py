"""Local end-to-end run: start a renewal, upload a license photo, confirm it.

Usage:
    python scripts/simulate_renewal.py https://example.com/path/to/license.jpg [--reply YES]

This script:
1. Builds the engine from config.yaml with the real OpenAI gateway
2. Swaps SMS and HR for mocks and the database for an in-memory store
3. Starts a renewal and feeds it the photo URL as an MMS upload
4. Replies to the extraction prompt and prints the conversation

Requires .env with: OPENAI_API_KEY (and OPIK_API_KEY to see traces)
"""
import argparse
from pathlib import Path

from dotenv import load_dotenv

from renewal_engine.builder import EngineBuilder
from renewal_engine.config import AppConfig
from renewal_engine.core.states import EventType, TriggeredBy

PROJECT_ROOT = Path(__file__).parent.parent
PHONE = "+15551234567"


def main():
    parser = argparse.ArgumentParser(description="Simulate one license renewal against the real LLM")
    parser.add_argument("image_url", help="Publicly reachable URL of a license photo")
    parser.add_argument("--reply", default="YES", help="Employee reply to the extraction prompt")
    args = parser.parse_args()

    load_dotenv(PROJECT_ROOT / ".env")

    config = AppConfig.from_yaml(PROJECT_ROOT / "config.yaml").model_copy(update={
        "sms_provider": "mock",
        "hr_provider": "mock",
        "database_url": None,
        "prompts_dir": str(PROJECT_ROOT / "prompts"),
        "supervisor_phone": "+15550000000",
    })
    engine = EngineBuilder(config).build()
    print(f"Engine built: llm={config.llm_model}, training_required={config.require_training}\n")

    instance = engine.processor.start_workflow(
        employee_id="emp-demo",
        phone_number=PHONE,
        license_name="Guard Card",
        expiration_date="2025-07-01",
        metadata={"first_name": "Demo"},
    )
    instance_id = instance.instance_id

    print("Uploading photo (one vision call, may take a few seconds)...")
    engine.processor.handle(
        instance_id, EventType.DOCUMENT_UPLOADED, {"document_url": args.image_url}, TriggeredBy.EMPLOYEE,
    )
    state = engine.repository.get_instance(instance_id).state
    print(f"State after upload: {state.value}\n")

    if state.value == "photo_uploaded":
        engine.processor.handle(instance_id, EventType.EMPLOYEE_MESSAGE, {"text": args.reply}, TriggeredBy.EMPLOYEE)

    instance = engine.repository.get_instance(instance_id)
    print("=== Conversation ===")
    for body in engine.sender.messages_to(PHONE):
        print(f"  -> {body}")
    print(f"\nFinal state: {instance.state.value}")
    if instance.extracted_data:
        data = instance.extracted_data
        print(f"Extracted: expires={data.expiration_date} number={data.license_number} "
              f"state={data.state} confidence={data.confidence:.2f}")


if __name__ == "__main__":
    main()
