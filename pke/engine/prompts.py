"""Task and system prompts for the five invocations."""

from __future__ import annotations

from textwrap import dedent
from typing import Dict

BASE_SYSTEM_PROMPT = dedent(
    """
    You are PKE (Promethean Knowledge Engine), an expert instructional design assistant.
    You create high-quality educational course content following best practices.
    Always respond with valid JSON that can be parsed.
    """
).strip()

INVOCATION_SYSTEM_ADDENDA: Dict[int, str] = {
    1: dedent(
        """
        For Invocation 1, generate a comprehensive course description and determine the appropriate assistance tier.
        Focus on clarity, learning outcomes, and target audience alignment.
        """
    ).strip(),
    2: dedent(
        """
        For Invocation 2, generate learning objectives using Bloom's Taxonomy.
        Each objective should be measurable, specific, and aligned with the course description.
        Use action verbs appropriate to the cognitive level.
        """
    ).strip(),
    3: dedent(
        """
        For Invocation 3, create a detailed course structure with topics, subtopics, and lessons.
        Ensure logical progression and appropriate depth for the course duration.
        Include performance criteria where applicable.
        """
    ).strip(),
    4: dedent(
        """
        For Invocation 4, generate complete course materials including detailed lesson content.
        Include activities, examples, and assessment items.
        Maintain consistency with learning objectives and course structure.
        """
    ).strip(),
    5: dedent(
        """
        For Invocation 5, analyze document templates and create mapping profiles.
        Identify placeholders, required fields, and automation opportunities.
        This is Grade A evidence - template/policy truth.
        """
    ).strip(),
}

REVISION_ADDENDUM = dedent(
    """
    This is a REVISION request. The user has provided feedback on previous output.
    Carefully address their specific concerns while maintaining overall quality.
    """
).strip()

INVOCATION_PROMPTS: Dict[int, str] = {
    1: dedent(
        """
        Generate a comprehensive course description based on the provided context.

        Requirements:
        1. Write 2-4 paragraphs describing the course
        2. Include target outcomes and audience fit
        3. Determine appropriate assistance tier (full/guided/minimal)
        4. Provide 3-5 suggestions for improvement

        Output JSON format:
        {
          "description": "course description text",
          "assistanceTier": "full|guided|minimal",
          "suggestions": ["suggestion 1", "suggestion 2"],
          "sources": []
        }
        """
    ).strip(),
    2: dedent(
        """
        Generate learning objectives for the course based on the provided context.

        Requirements:
        1. Create measurable learning objectives using Bloom's Taxonomy
        2. Each objective should start with an action verb
        3. Align objectives with the course description
        4. Include the Bloom's level for each objective

        Output JSON format:
        {
          "learningObjectives": [
            {
              "code": "LO1",
              "text": "objective text starting with action verb",
              "bloomLevel": "remember|understand|apply|analyze|evaluate|create"
            }
          ],
          "alignmentNotes": "notes on how objectives align with course goals",
          "sources": []
        }
        """
    ).strip(),
    3: dedent(
        """
        Create a detailed course structure with topics, subtopics, and lessons.

        Requirements:
        1. Organize content into logical topics
        2. Each topic should have subtopics
        3. Each subtopic should have specific lessons
        4. Include duration estimates for lessons
        5. Add performance criteria where applicable

        Output JSON format:
        {
          "topics": [
            {
              "title": "Topic Title",
              "order": 1,
              "subtopics": [
                {
                  "title": "Subtopic Title",
                  "lessons": [
                    {"title": "Lesson Title", "duration": 30, "performanceCriteria": ["criterion 1"]}
                  ]
                }
              ]
            }
          ],
          "estimatedDuration": {"total": 480, "unit": "minutes"},
          "sources": []
        }
        """
    ).strip(),
    4: dedent(
        """
        Generate complete course materials including content, activities, and assessments.

        Requirements:
        1. Expand each lesson with detailed content
        2. Create engaging activities
        3. Develop assessment items linked to learning objectives
        4. Maintain consistency with course structure

        Output JSON format:
        {
          "topics": [full topics with content],
          "assessments": [
            {
              "question": "question text",
              "type": "MCQ|TrueFalse|ShortAnswer",
              "options": ["A", "B", "C", "D"],
              "correctAnswer": "A",
              "linkedLO": "LO1"
            }
          ],
          "activities": [
            {"title": "activity title", "type": "discussion|exercise|project", "description": "activity description", "duration": 20}
          ],
          "summary": {"totalLessons": 0, "totalAssessments": 0, "totalActivities": 0},
          "sources": []
        }
        """
    ).strip(),
    5: dedent(
        """
        Analyze the provided document template and create a mapping profile.

        Requirements:
        1. Identify all placeholders and fields
        2. Map fields to course data attributes
        3. Suggest automation rules
        4. Note any manual input requirements

        Output JSON format:
        {
          "analysis": "description of template structure",
          "fields": [
            {"name": "field name", "type": "text|list|table|image", "location": "description of location", "required": true}
          ],
          "mappings": [
            {"field": "field name", "source": "course.attribute.path", "transform": "none|format|calculate"}
          ],
          "automationProfile": {"automatable": 80, "manualFields": ["field1", "field2"]}
        }
        """
    ).strip(),
}


def build_system_prompt(invocation: int, *, is_revision: bool = False) -> str:
    addendum = INVOCATION_SYSTEM_ADDENDA.get(invocation)
    prompt = f"{BASE_SYSTEM_PROMPT}\n{addendum}" if addendum else BASE_SYSTEM_PROMPT
    if is_revision:
        prompt += f"\n\n{REVISION_ADDENDUM}"
    return prompt


def build_user_message(invocation: int, context_json: str) -> str:
    return f"{INVOCATION_PROMPTS[invocation]}\n\nContext:\n{context_json}"


__all__ = [
    "BASE_SYSTEM_PROMPT",
    "INVOCATION_PROMPTS",
    "REVISION_ADDENDUM",
    "build_system_prompt",
    "build_user_message",
]
