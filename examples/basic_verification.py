#!/usr/bin/env python3
"""Basic example of a verified generation."""

import asyncio

from verigate import VerificationCriteria, create_service, make_fingerprint
from verigate.verification import CustomCriterion


async def main():
    """Generate a CV summary with Claude and have it judged by OpenAI."""
    async with create_service() as service:
        criteria = VerificationCriteria(
            custom=[
                CustomCriterion(
                    name="ats_keywords",
                    description="Uses the keywords of the target job description",
                    weight=2.0,
                )
            ]
        )

        prompt = (
            "Write a three sentence professional summary for a backend engineer "
            "with eight years of Python experience applying for an SRE role."
        )
        result = await service.generate_verified(
            prompt,
            criteria,
            service="cv-enhancement",
            key=make_fingerprint("summary", "job-42", role="sre"),
        )

        print("\n=== Result ===")
        print(f"Verified: {result.verified} ({result.outcome.value})")
        if result.result:
            print(f"Score: {result.result.overall_score:.1f}")
            for issue in result.result.issues:
                print(f"[{issue.severity.value}] {issue.category.value}: {issue.description}")
        print(f"\n{result.data}")

        print("\n" + service.audit_log.get_report_section())


if __name__ == "__main__":
    asyncio.run(main())
