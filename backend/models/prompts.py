import json

MAX_COMPARABLES = 5

EXTRACTION_PROMPT = """You are an expert manufacturing engineer analyzing technical drawings.

Analyze this engineering drawing image and extract the following information as JSON:

{
  "dimensions": {
    "length": <number or null>,
    "width": <number or null>,
    "height": <number or null>,
    "thickness": <number or null>,
    "diameter": <number or null>,
    "unit": "mm" | "cm" | "inch" | "m"
  },
  "material": {
    "type": "<material name, e.g. 'Steel SS400', 'Aluminum 6061', 'SUS304'>",
    "grade": "<grade if specified, or null>",
    "specifications": "<any additional specs, or null>",
    "confidence": <0.0 to 1.0>
  },
  "quantity": <integer>,
  "surfaceFinish": "<e.g. 'Polishing', 'Painting', 'Anodizing', or null>",
  "tolerances": ["<tolerance 1>", "<tolerance 2>"],
  "manufacturingProcess": ["<process 1>", "<process 2>"],
  "overallConfidence": <0.0 to 1.0>
}

Rules:
- Extract EXACT dimensions from the drawing
- If a dimension is not visible, use null -- never guess and never use 0
- Identify material type from notes, title block or material callouts
- Quantity comes from the title block or parts list; use 1 if not shown
- List all manufacturing processes implied (cutting, bending, welding, machining, etc.)
- Set confidence values based on image clarity and completeness
- Return ONLY valid JSON, no markdown formatting"""

COST_ESTIMATION_PROMPT = """You are a manufacturing cost estimation expert.

Given the following part specifications and similar historical projects, estimate the manufacturing cost in JPY.

Return ONLY valid JSON matching this schema:
{
  "material": {
    "unitPrice": <material price per part in JPY>,
    "totalCost": <total material cost in JPY>,
    "reasoning": "<explanation>"
  },
  "labor": {
    "estimatedHours": <hours>,
    "hourlyRate": <JPY per hour>,
    "totalCost": <total labor cost in JPY>,
    "reasoning": "<explanation>"
  },
  "overhead": {
    "percentage": <overhead % of material + labor>,
    "amount": <overhead cost in JPY>
  },
  "total": {
    "cost": <material + labor + overhead in JPY>,
    "recommendedPrice": <suggested selling price in JPY>,
    "margin": <profit margin %>
  },
  "confidence": <0.0 to 1.0>,
  "reasoning": "<overall explanation>",
  "riskFactors": ["<risk 1>", "<risk 2>"]
}

Rules:
- All costs cover the full quantity, not a single part
- total.cost MUST equal material.totalCost + labor.totalCost + overhead.amount
- Costs are never negative
- Lower the confidence when dimensions or material are missing"""

_NULLABLE_NUMBER = {"type": ["number", "null"]}
_NULLABLE_STRING = {"type": ["string", "null"]}

DRAWING_SPECS_SCHEMA = {
    "type": "object",
    "properties": {
        "dimensions": {
            "type": "object",
            "properties": {
                "length": _NULLABLE_NUMBER,
                "width": _NULLABLE_NUMBER,
                "height": _NULLABLE_NUMBER,
                "thickness": _NULLABLE_NUMBER,
                "diameter": _NULLABLE_NUMBER,
                "unit": {"type": "string", "enum": ["mm", "cm", "inch", "m"]},
            },
            "required": ["unit"],
        },
        "material": {
            "type": "object",
            "properties": {
                "type": {"type": "string"},
                "grade": _NULLABLE_STRING,
                "specifications": _NULLABLE_STRING,
                "confidence": {"type": "number"},
            },
            "required": ["type", "confidence"],
        },
        "quantity": {"type": "integer"},
        "surfaceFinish": _NULLABLE_STRING,
        "tolerances": {"type": "array", "items": {"type": "string"}},
        "manufacturingProcess": {"type": "array", "items": {"type": "string"}},
        "overallConfidence": {"type": "number"},
    },
    "required": ["dimensions", "material", "quantity", "manufacturingProcess", "overallConfidence"],
}

COST_ESTIMATE_SCHEMA = {
    "type": "object",
    "properties": {
        "material": {
            "type": "object",
            "properties": {
                "unitPrice": _NULLABLE_NUMBER,
                "totalCost": {"type": "number"},
                "reasoning": _NULLABLE_STRING,
            },
            "required": ["totalCost"],
        },
        "labor": {
            "type": "object",
            "properties": {
                "estimatedHours": _NULLABLE_NUMBER,
                "hourlyRate": _NULLABLE_NUMBER,
                "totalCost": {"type": "number"},
                "reasoning": _NULLABLE_STRING,
            },
            "required": ["totalCost"],
        },
        "overhead": {
            "type": "object",
            "properties": {
                "percentage": _NULLABLE_NUMBER,
                "amount": {"type": "number"},
            },
            "required": ["amount"],
        },
        "total": {
            "type": "object",
            "properties": {
                "cost": {"type": "number"},
                "recommendedPrice": _NULLABLE_NUMBER,
                "margin": _NULLABLE_NUMBER,
            },
            "required": ["cost"],
        },
        "confidence": {"type": "number"},
        "reasoning": {"type": "string"},
        "riskFactors": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["material", "labor", "overhead", "total", "confidence"],
}


def build_cost_prompt(specs: dict, comparables: list[dict] | None = None) -> str:
    """Assemble the cost-estimation input from extracted specs and past quotes."""
    comparables = (comparables or [])[:MAX_COMPARABLES]
    sections = [
        COST_ESTIMATION_PROMPT,
        "",
        "## Current Project",
        json.dumps(specs, indent=2, ensure_ascii=False),
        "",
        "## Similar Historical Projects",
        json.dumps(comparables, indent=2, ensure_ascii=False) if comparables else "No historical data available",
    ]
    return "\n".join(sections)
