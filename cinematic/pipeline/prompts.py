"""
Prompt templates for script analysis and scene rendering.
"""

from typing import Optional

from .models import CharacterProfile, Project, Scene

SCENE_SECONDS = 10

ANALYSIS_TEMPLATE = """You are a professional film director and script analyst. Split the script below into sequential video scenes.

SCENE RULES:
1. Every scene is exactly {seconds} seconds of narration.
2. Classify each scene's pacing by word count:
   - fast: 30-35 words
   - medium: 20-25 words
   - slow: 12-16 words
3. Give each scene a narrative role (Hook, Problem, Solution, CTA, ...).
4. Keep narrative continuity and a consistent character across scenes.

LANGUAGE RULES:
- Detect the script's written language and keep it for every scene. Never translate.
- Copy each scene's narration text verbatim from the script.
- Report the text direction: LTR or RTL.
- Choose a spoken dialect/accent suited to the audience, tone and character.
- Write every visualPrompt in English, whatever the script language.
{character_note}
Return JSON only, in exactly this shape:
{{
  "primaryLanguage": "language name, e.g. Arabic, English, French",
  "languageDirection": "LTR|RTL",
  "totalScenes": number,
  "totalDuration": number,
  "videoType": "string",
  "pacing": "fast|medium|slow",
  "characterProfile": {{
    "description": "English description",
    "voiceLanguage": "same as primaryLanguage",
    "accent": "spoken dialect, e.g. Egyptian Arabic, American English",
    "visualFeatures": {{"age": "", "appearance": "", "clothing": "", "style": ""}}
  }},
  "scenes": [
    {{
      "sceneNumber": number,
      "role": "string",
      "narrationText": "exact script text for this scene",
      "speedType": "fast|medium|slow",
      "wordCount": number,
      "visualPrompt": "detailed English visual description"
    }}
  ]
}}

Script:
{script}"""

CHARACTER_IMAGE_NOTE = (
    "\nA character reference image was provided: keep that same character in every scene.\n"
)


def build_analysis_prompt(script: str, has_character_image: bool = False) -> str:
    return ANALYSIS_TEMPLATE.format(
        seconds=SCENE_SECONDS,
        character_note=CHARACTER_IMAGE_NOTE if has_character_image else "",
        script=script,
    )


def build_generation_prompt(
    scene: Scene,
    project: Project,
    profile: Optional[CharacterProfile] = None,
) -> str:
    """
    Visual prompt + the exact dialog + language/dialect lock.

    The dialog section is always present; the language section only once the
    project has a detected language.
    """
    lines = [
        scene.visual_prompt,
        "",
        "=== CHARACTER DIALOG ===",
        f'Spoken Text: "{scene.narration_text}"',
        "The character speaks these EXACT words from the script.",
    ]

    if project.primary_language:
        direction = project.language_direction.value if project.language_direction else "LTR"
        lines += [
            "",
            "=== LANGUAGE & DIALECT ===",
            f"Text Language: {project.primary_language}",
            f"Text Direction: {direction}",
        ]
        accent = profile.accent if profile else None
        if accent:
            lines.append(f"Spoken Dialect/Accent: {accent}")
        if profile and profile.voice_language:
            lines.append(f"Voice Language: {profile.voice_language}")

        dialect = f" using the {accent} dialect/accent" if accent else ""
        lines += [
            "",
            "CRITICAL INSTRUCTION:",
            f"The character MUST speak the dialog in {project.primary_language}{dialect}.",
            "Lip sync and timing must match the spoken narration.",
            "Do NOT change the language of the text; keep it exactly as written.",
        ]

    return "\n".join(lines)
